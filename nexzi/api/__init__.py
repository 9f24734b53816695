"""
Signaling relay HTTP/WebSocket surface.
"""
