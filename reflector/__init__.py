"""
Reflector - inbound reachability checks for the calling address
"""

__version__ = "1.0.0"
