from __future__ import annotations
import logging
from datetime import timedelta
from typing import Optional

from fastapi import Request

from .blobs import LocalBlobStorage
from .db import make_engine, DATABASE_URL
from .events import VisibilityHub
from .question_bank import QuestionBank
from .session import SessionManager
from .settings import Settings, settings as default_settings
from .store import TreeStore
from .timeutil import Clock, utc_now
from .transcription import HttpTranscriber, SpeechTranscriber, Transcriber

logger = logging.getLogger(__name__)


class Services:
	"""Collaborators shared by the routers; constructed explicitly, started and stopped with the app."""

	def __init__(
		self,
		*,
		store: TreeStore,
		blobs: LocalBlobStorage,
		transcriber: Transcriber,
		bank: Optional[QuestionBank] = None,
		config: Optional[Settings] = None,
		clock: Clock = utc_now,
		manager: Optional[SessionManager] = None,
		recognizer: Optional[Transcriber] = None,
	) -> None:
		self.config = config or default_settings
		self.store = store
		self.blobs = blobs
		self.transcriber = transcriber
		# Backs the /speech-to-text endpoint; always in-process
		if recognizer is None:
			if isinstance(transcriber, SpeechTranscriber):
				recognizer = transcriber
			else:
				recognizer = SpeechTranscriber(
					sample_rate_hertz=self.config.speech_sample_rate_hertz,
					language_code=self.config.speech_language_code,
				)
		self.recognizer = recognizer
		self.bank = bank or QuestionBank()
		self.clock = clock
		self.hub = VisibilityHub()
		self.manager = manager or SessionManager(
			store=store,
			bank=self.bank,
			blobs=blobs,
			transcriber=transcriber,
			hub=self.hub,
			clock=clock,
			time_limit=timedelta(minutes=self.config.exam_time_limit_minutes),
			written_sample_size=self.config.exam_written_sample_size,
			audio_sample_size=self.config.exam_audio_sample_size,
			language_code=self.config.speech_language_code,
			timer_enabled=self.config.exam_timer_enabled,
			tick_seconds=self.config.exam_tick_seconds,
		)

	@classmethod
	def from_settings(cls, config: Settings = default_settings) -> "Services":
		store = TreeStore(make_engine(config.database_url or DATABASE_URL))
		blobs = LocalBlobStorage(config.blob_dir, config.public_base_url)
		transcriber: Transcriber
		if config.speech_function_url:
			transcriber = HttpTranscriber(config.speech_function_url)
		else:
			transcriber = SpeechTranscriber(
				sample_rate_hertz=config.speech_sample_rate_hertz,
				language_code=config.speech_language_code,
			)
		return cls(store=store, blobs=blobs, transcriber=transcriber, config=config)

	def init(self) -> None:
		self.store.init()
		self.blobs.init()
		logger.info("Services started (transcriber: %s)", type(self.transcriber).__name__)

	async def aclose(self) -> None:
		await self.manager.close()
		await self.transcriber.aclose()
		if self.recognizer is not self.transcriber:
			await self.recognizer.aclose()
		self.store.close()


def get_services(request: Request) -> Services:
	return request.app.state.services


def get_db(request: Request):
	db = request.app.state.services.store.session()
	try:
		yield db
	finally:
		db.close()
