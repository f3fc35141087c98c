"""
Corrective Action Tracker
Domain models.

``db`` is the shared Flask-SQLAlchemy handle; the corrective-action
records themselves are plain dataclasses persisted as JSON collections
through ``capa.services.blob_store``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
