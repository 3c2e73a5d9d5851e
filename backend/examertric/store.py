"""
Tree-structured document store.

Paths look like ``examProgress/<uid>/answers/<questionKey>``. Each two-segment
root (``examProgress/<uid>``) is one row holding its whole subtree as JSON;
deeper paths read from and patch inside that subtree, one-segment paths
compose every row underneath them. Writing ``None`` deletes, and empty
objects are pruned the way the hosted realtime stores do it.
"""

from __future__ import annotations

import json
import secrets
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, make_sessionmaker
from .errors import PersistenceFailed
from .models import TreeNode


PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def split_path(path: str) -> List[str]:
	segments = [s for s in (path or "").strip("/").split("/") if s]
	if not segments:
		raise ValueError("path must not be empty")
	return segments


def make_push_id(now_ms: Optional[int] = None) -> str:
	"""Time-ordered unique key: 8 timestamp chars followed by 12 random chars."""
	stamp = int(time.time() * 1000) if now_ms is None else int(now_ms)
	head = []
	for _ in range(8):
		head.append(PUSH_CHARS[stamp % 64])
		stamp //= 64
	tail = "".join(secrets.choice(PUSH_CHARS) for _ in range(12))
	return "".join(reversed(head)) + tail


def _strip_nulls(value: Any) -> Any:
	if isinstance(value, dict):
		out = {}
		for k, v in value.items():
			v = _strip_nulls(v)
			if v is None or v == {}:
				continue
			out[str(k)] = v
		return out
	if isinstance(value, (list, tuple)):
		return [_strip_nulls(v) for v in value]
	return value


def _descend(value: Any, segments: List[str]) -> Any:
	for seg in segments:
		if not isinstance(value, dict):
			return None
		value = value.get(seg)
		if value is None:
			return None
	return value


def _assign(root: Any, segments: List[str], value: Any) -> Dict[str, Any]:
	root = root if isinstance(root, dict) else {}
	node = root
	trail = []
	for seg in segments[:-1]:
		child = node.get(seg)
		if not isinstance(child, dict):
			child = {}
			node[seg] = child
		trail.append((node, seg))
		node = child
	if value is None:
		node.pop(segments[-1], None)
	else:
		node[segments[-1]] = value
	# Prune objects left empty by a delete
	for parent, seg in reversed(trail):
		if parent.get(seg) == {}:
			parent.pop(seg)
	return root


class TreeStore:
	def __init__(self, engine: Engine) -> None:
		self.engine = engine
		self._Session = make_sessionmaker(engine)

	def init(self) -> None:
		try:
			Base.metadata.create_all(bind=self.engine)
		except SQLAlchemyError as e:
			raise PersistenceFailed(str(e)) from e

	def close(self) -> None:
		self.engine.dispose()

	def session(self):
		"""ORM session on the same engine, for the auth tables."""
		return self._Session()

	def read(self, path: str) -> Any:
		segments = split_path(path)
		try:
			with self._Session() as db:
				if len(segments) == 1:
					prefix = segments[0] + "/"
					rows = db.execute(select(TreeNode).where(TreeNode.path.startswith(prefix, autoescape=True))).scalars().all()
					if not rows:
						return None
					return {row.path[len(prefix):]: json.loads(row.value_json) for row in rows}
				row = db.get(TreeNode, "/".join(segments[:2]))
				if row is None:
					return None
				return _descend(json.loads(row.value_json), segments[2:])
		except SQLAlchemyError as e:
			raise PersistenceFailed(str(e)) from e

	def write(self, path: str, value: Any) -> None:
		segments = split_path(path)
		value = _strip_nulls(value)
		if value == {}:
			value = None
		try:
			with self._Session.begin() as db:
				if len(segments) == 1:
					self._write_collection(db, segments[0], value)
					return
				root_path = "/".join(segments[:2])
				row = db.get(TreeNode, root_path)
				if len(segments) == 2:
					new_root = value
				else:
					current = json.loads(row.value_json) if row is not None else {}
					new_root = _assign(current, segments[2:], value)
					if new_root == {}:
						new_root = None
				if new_root is None:
					if row is not None:
						db.delete(row)
				elif row is None:
					db.add(TreeNode(path=root_path, value_json=json.dumps(new_root)))
				else:
					row.value_json = json.dumps(new_root)
		except SQLAlchemyError as e:
			raise PersistenceFailed(str(e)) from e

	def _write_collection(self, db, name: str, value: Any) -> None:
		prefix = name + "/"
		db.execute(delete(TreeNode).where(TreeNode.path.startswith(prefix, autoescape=True)))
		if value is None:
			return
		if not isinstance(value, dict):
			raise ValueError(f"collection {name!r} can only hold an object")
		for key, child in value.items():
			db.add(TreeNode(path=prefix + key, value_json=json.dumps(child)))

	def delete(self, path: str) -> None:
		self.write(path, None)

	def push_create(self, path: str) -> str:
		"""Reserve a unique child path under ``path``; the caller writes to it."""
		segments = split_path(path)
		return "/".join(segments + [make_push_id()])


def progress_path(uid: str) -> str:
	return f"examProgress/{uid}"


def results_path(uid: str) -> str:
	return f"examResults/{uid}"


def reviews_path(uid: str) -> str:
	return f"audioReviews/{uid}"


def review_path(uid: str, question_key: str) -> str:
	return f"{reviews_path(uid)}/{question_key}"


def user_path(uid: str) -> str:
	return f"users/{uid}"
