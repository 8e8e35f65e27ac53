"""
ClawChat - realtime messaging and presence core for a group chat service.

Authenticates WebSocket clients, tracks who is online across their devices,
keeps channel and thread room membership, and fans out message lifecycle
events committed by the REST write path.
"""

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = ["__version__"]
