"""
Auxiliary services used by the CLI and the relay.
"""
