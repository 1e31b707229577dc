"""
SQLAlchemy ORM models for the document store.

This module contains database table definitions using SQLAlchemy.
For Pydantic record schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, String

from chatpro.storage import Base


class Document(Base):
    """
    One document of the path-addressed store.

    Table: documents
    Primary Key: path (e.g. apps/{appId}/directory/{uid})
    """
    __tablename__ = "documents"

    path = Column(String, primary_key=True, index=True)
    collection = Column(String, nullable=False, index=True)  # parent path
    doc_id = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)  # Server time ISO-8601
