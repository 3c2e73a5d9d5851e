from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .errors import ExamertricError
from .services import Services
from .settings import settings
from .routers import admin, auth, exam, results, speech


def create_app(services: Optional[Services] = None) -> FastAPI:
	services = services or Services.from_settings(settings)

	app = FastAPI(title="Examertric API")
	app.state.services = services

	app.add_middleware(
		CORSMiddleware,
		allow_origins=services.config.cors_allow_origins,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	app.include_router(auth.router)
	app.include_router(exam.router)
	app.include_router(results.router)
	app.include_router(admin.router)
	app.include_router(speech.router)

	# Uploaded audio answers; the directory is created on startup
	app.mount(services.blobs.mount_path, StaticFiles(directory=services.blobs.root, check_dir=False), name="blobs")

	@app.exception_handler(ExamertricError)
	async def examertric_error_handler(request: Request, exc: ExamertricError):
		detail = exc.user_message if hasattr(exc, "user_message") else exc.detail
		return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.code})

	@app.get("/info")
	def info():
		return {
			"status": "ok",
			"transcriber": type(services.transcriber).__name__,
			"speech_function_configured": bool(services.config.speech_function_url),
		}

	@app.on_event("startup")
	async def startup_event():
		services.init()

	@app.on_event("shutdown")
	async def shutdown_event():
		await services.aclose()

	return app


app = create_app()
