"""
Takharrujy workflow core
Model package: shared Flask-SQLAlchemy handle.

Model modules import ``db`` from here; the application factory binds it
with ``db.init_app(app)`` and imports every model module before
``create_all``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
