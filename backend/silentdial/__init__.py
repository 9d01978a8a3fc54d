"""
SilentDial - Backend Application Package

This package contains the call-session orchestration backend:
- API routes and the WebSocket relay to the browser client
- Conversation state machine, session registry and admission control
- Voice provider integrations (outbound call + duplex channel)
- Logging, configuration and graceful shutdown
"""

__version__ = "0.1.0"
