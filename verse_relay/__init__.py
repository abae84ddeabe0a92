"""
verse-relay — Push Bible verses into OBS Studio over obs-websocket v5.

Modules:
  core/    — OBS WebSocket transport, handshake, request multiplexer, session registry
  verses/  — Verse formatting for on-screen text
  store/   — Stored OBS connection records (YAML)
  api/     — FastAPI REST + WebSocket push channel
  config/  — Settings, env loading, YAML config
"""

__version__ = "1.0.0"
__author__ = "verse-relay"
