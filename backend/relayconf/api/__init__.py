"""
HTTP API routers for relayconf.
"""
