"""
relayconf - staged, validated and reversible Postfix configuration changes.
"""
__version__ = "0.1.0"
