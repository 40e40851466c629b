from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


def create_app(studypal) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(title="StudyPal", version="1.0.0")

    # CORS for local network access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store references for route handlers
    app.state.studypal = studypal
    app.state.config_manager = studypal.config_manager
    app.state.shared_state = studypal.state
    app.state.timer = studypal.timer
    app.state.stats = studypal.stats
    app.state.conversation = studypal.conversation

    from api.routes.settings import router as settings_router
    from api.routes.stats import router as stats_router
    from api.routes.timer import router as timer_router
    from api.routes.voice import router as voice_router

    app.include_router(timer_router, prefix="/api/timer", tags=["timer"])
    app.include_router(voice_router, prefix="/api/voice", tags=["voice"])
    app.include_router(stats_router, prefix="/api/stats", tags=["stats"])
    app.include_router(settings_router, prefix="/api/settings", tags=["settings"])

    @app.get("/api/health")
    async def health():
        state = studypal.state
        return {
            "status": "ok",
            "ready": state.is_ready,
            "voice_phase": state.voice_phase.value,
            "voice_active": studypal.conversation.is_active,
            "timer_mode": studypal.timer.mode.value,
            "timer_running": studypal.timer.is_running,
        }

    return app
