"""
Flags Service package.

Evaluates feature gates, dynamic configs, experiments and layers for a
subject against a ruleset that is synced in the background. It provides:

- app.main: HTTP surface for evaluations, overrides and health.
- app.server: In-process entry point that wires sync and evaluation.
- app.rules: Spec models, hashing, condition helpers and the evaluator.
- app.store: Snapshot, ruleset and ID list synchronization.
- app.persistence: Sticky bucketing storage.
- app.adapters: Data adapters for backing up and bootstrapping rulesets.

Guidelines:
- Evaluation is synchronous and reads one snapshot per call.
- Only the store writes the snapshot; it swaps a single reference.
- Sync failures keep the previous snapshot and are logged, never raised.
"""
