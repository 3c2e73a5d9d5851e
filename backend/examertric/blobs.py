from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path

from .errors import UploadFailed


@dataclass
class StoredBlob:
	url: str
	path: str


class LocalBlobStorage:
	"""Writes blobs under ``root`` and hands back the public URL they are served from."""

	def __init__(self, root: str | Path, public_base_url: str, mount_path: str = "/blobs") -> None:
		self.root = Path(root).resolve()
		self.public_base_url = public_base_url.rstrip("/")
		self.mount_path = "/" + mount_path.strip("/")

	def init(self) -> None:
		self.root.mkdir(parents=True, exist_ok=True)

	def _target(self, path: str) -> Path:
		target = (self.root / path.lstrip("/")).resolve()
		if self.root not in target.parents:
			raise UploadFailed(f"Refusing to write outside blob root: {path}")
		return target

	def upload(self, path: str, data: bytes) -> StoredBlob:
		target = self._target(path)
		try:
			target.parent.mkdir(parents=True, exist_ok=True)
			target.write_bytes(data)
		except OSError as e:
			raise UploadFailed(f"Failed to save audio: {e}") from e
		relative = target.relative_to(self.root).as_posix()
		return StoredBlob(url=f"{self.public_base_url}{self.mount_path}/{relative}", path=relative)
