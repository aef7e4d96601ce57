"""Main entry point for running the jobstream API with auto-reload."""
import uvicorn

from jobstream.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else 'SQLite'}")
    print(f"Scheduler: {'Enabled' if settings.workflows.scheduler_enabled else 'Disabled'}")
    print(f"Auto-reload: {'Enabled' if settings.debug else 'Disabled'}")
    print("-" * 50)

    uvicorn.run(
        "jobstream.api:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.debug,
        reload_dirs=["jobstream", "extraction", "config"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
