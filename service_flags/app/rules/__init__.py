"""
Rules evaluation package.

Defines the spec model and the evaluator that walks a spec's ordered
rules for a subject. Results are deterministic: the same subject and
snapshot always produce the same value, rule id and exposures.

Modules of interest:
- models: Spec, Rule, Condition, Subject and EvaluationResult.
- engine: Rule state machine, overrides and sticky bucketing.
- conditions: Value extraction and comparison helpers.
- hashing: Unit hashing for bucketing and name obfuscation.
- client_initialize: Pre-evaluated payload for client SDKs.
"""
