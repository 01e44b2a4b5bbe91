"""
Database Management Scripts

This module contains utilities for database operations:
- Table creation from sql/schema and boundary imports
- Data gap persistence
- psql and SQLAlchemy statement clients
- SQL parameter sanitizing
"""
