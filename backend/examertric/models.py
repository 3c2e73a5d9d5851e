from __future__ import annotations
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text
from .db import Base


class AuthUser(Base):
	__tablename__ = "auth_users"
	uid = Column(String(64), primary_key=True, index=True)
	email = Column(String(256), unique=True, index=True, nullable=False)
	password_hash = Column(String(256), nullable=False)
	display_name = Column(String(256), nullable=True)
	# Custom claim granted by the set-admin CLI
	is_admin = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class TreeNode(Base):
	__tablename__ = "tree_nodes"
	# Two-segment root path, e.g. "examProgress/<uid>"; the whole subtree lives in value_json
	path = Column(String(512), primary_key=True)
	value_json = Column(Text, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
