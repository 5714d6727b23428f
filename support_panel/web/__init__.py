# Presentation Layer
# ==================
# FastAPI JSON endpoints. All session work is delegated to the
# SessionManager kept on app.state.

from .app import app, create_app

__all__ = ["app", "create_app"]
