"""
Snapshot store and synchronization.

Keeps the current ruleset and ID lists fresh by polling the ruleset API
or a data adapter, and installs each successful sync atomically.
"""
