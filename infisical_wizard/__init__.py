"""
Idempotent installer for a self-hosted Infisical stack.
"""
