"""
AgentVault - local secret vault for AI agents.

Stores API keys and tokens encrypted behind a master password and hands
them, on request, to one trusted local agent over an authenticated
WebSocket.
"""

__version__ = "1.0.0"
