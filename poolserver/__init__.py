import os
from typing import Optional

from flask import Flask
from dotenv import load_dotenv

from storage_pool import ConfigManager, StoragePoolService

from .logging import init_logging


def create_app(service: Optional[StoragePoolService] = None,
               config_file: Optional[str] = None) -> Flask:
    """Application factory for the storage pool server."""

    # Load environment variables
    load_dotenv()

    if service is None:
        config_manager = ConfigManager(config_file or os.getenv("STORAGE_POOL_CONFIG"))
        service = StoragePoolService(config_manager.load_config())

    app = Flask(__name__)
    init_logging(app, service.settings.log_level)

    app.extensions["storage_pool"] = service

    from .storage_routes import storage_bp

    app.register_blueprint(storage_bp)

    return app
