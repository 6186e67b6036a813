"""
ProgramHub: SQLAlchemy models package.

A single Flask-SQLAlchemy instance is shared by every model module:
    from programhub.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
