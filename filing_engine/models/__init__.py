"""
Regulatory Filing Platform
SQLAlchemy extension instance shared by every model module.

Usage:
    from filing_engine.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
