# Overview: Flask extension instances for database, migrations and the sync engine.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.sync_engine import SyncEngine

db = SQLAlchemy()
migrate = Migrate()
sync_engine = SyncEngine()
