"""
Flask Web Application for the portfolio sync service.
Provides the REST API for sync runs, weight settings and score updates.
"""

import logging
from datetime import datetime
from typing import Optional

from flask import Flask, request
from flask_cors import CORS

from ..common.config import SyncConfig
from ..common.engine import create_engine_from_config
from ..common.models import create_tables
from ..common.session import SessionManager
from ..scheduler.events import EventBroadcaster
from ..scheduler.orchestrator import SyncOrchestrator
from ..scheduler.recalculation import RecalculationService
from .utils.rate_limit import RateLimiter


logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def create_app(
    config: Optional[SyncConfig] = None,
    session_manager: Optional[SessionManager] = None,
    broadcaster: Optional[EventBroadcaster] = None,
    orchestrator: Optional[SyncOrchestrator] = None
) -> Flask:
    """
    Create Flask application with the API blueprint registered.

    Args:
        config: Sync configuration (loaded from the environment when None)
        session_manager: Session factory (built from config.database when None)
        broadcaster: Receives weight/score change events
        orchestrator: Sync orchestrator (built from the other services when None)

    Returns:
        Flask application
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES

    config = config or SyncConfig.from_env()
    if session_manager is None:
        engine = create_engine_from_config(config.database)
        create_tables(engine)
        session_manager = SessionManager(engine)

    recalculation = RecalculationService(session_manager, broadcaster, config.recalculation_batch_size)
    if orchestrator is None:
        orchestrator = SyncOrchestrator(session_manager, config, recalculation=recalculation)
    else:
        recalculation = orchestrator.recalculation

    # Services for access by blueprints
    app.sync_config = config
    app.session_manager = session_manager
    app.recalculation = recalculation
    app.orchestrator = orchestrator
    app.rate_limiter = RateLimiter()

    CORS(app, supports_credentials=True)

    # Prevent caching of API responses
    @app.after_request
    def add_cache_headers(response):
        if '/api/' in request.path:
            response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
            response.headers['Pragma'] = 'no-cache'
            response.headers['Expires'] = '0'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    from .routes.api import api_bp
    app.register_blueprint(api_bp)

    app.web_started_at = datetime.now()
    logger.info(f"Web application created (database: {config.database.db_type.value})")
    return app

