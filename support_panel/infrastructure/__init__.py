# Infrastructure Layer
# ====================
# Contains all external service integrations:
# - whatsapp/: Selenium-based WhatsApp Web session clients
# - persistence/: SQLite gateway, conversation log
# - followup/: Follow-up bookkeeping collaborator
# - config/: Environment and settings management
#
# This layer can be replaced entirely without affecting domain/application layers.
