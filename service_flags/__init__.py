"""
Flags evaluation service.
"""
