from __future__ import annotations
from typing import Callable, Dict, List, Optional


VisibilityListener = Callable[[bool], None]


class VisibilityEventSource:
	"""Tab visibility changes for one user. Listeners get ``hidden: bool``."""

	def __init__(self) -> None:
		self._listeners: List[VisibilityListener] = []

	def subscribe(self, listener: VisibilityListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return unsubscribe

	def publish(self, hidden: bool) -> int:
		delivered = 0
		for listener in list(self._listeners):
			listener(hidden)
			delivered += 1
		return delivered

	@property
	def listener_count(self) -> int:
		return len(self._listeners)


class VisibilityHub:
	def __init__(self) -> None:
		self._sources: Dict[str, VisibilityEventSource] = {}

	def source_for(self, uid: str) -> VisibilityEventSource:
		source = self._sources.get(uid)
		if source is None:
			source = VisibilityEventSource()
			self._sources[uid] = source
		return source

	def get(self, uid: str) -> Optional[VisibilityEventSource]:
		return self._sources.get(uid)

	def discard(self, uid: str) -> None:
		source = self._sources.get(uid)
		if source is not None and source.listener_count == 0:
			del self._sources[uid]

	@property
	def source_count(self) -> int:
		return len(self._sources)
