"""
Utility modules for relayconf.
"""
