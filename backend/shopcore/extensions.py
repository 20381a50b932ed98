# Overview: Flask extension instances for database, migrations and webhook dispatch.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .webhooks import WebhookDispatcher

db = SQLAlchemy()
migrate = Migrate()
webhooks = WebhookDispatcher()
