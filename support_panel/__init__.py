# Support Panel - Multi-Agent WhatsApp Session Manager
# =====================================================
# Each support agent owns an independent WhatsApp Web session (instance).
# Inbound messages are routed to the agent that owns the contact.
#
# ARCHITECTURE LAYERS:
# - Presentation:   FastAPI JSON endpoints (web/)
# - Application:    Session lifecycle, reconnection and message routing
# - Domain:         Instance / assignment models and events (no I/O)
# - Infrastructure: External services (WhatsApp Web, SQLite, config)
#
# The session client and the persistence gateway are narrow interfaces, so
# either can be replaced without touching the application layer.
