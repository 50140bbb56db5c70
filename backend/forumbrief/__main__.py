import uvicorn

from forumbrief.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "forumbrief.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_debug,
        log_config=None,  # structlog owns the root handler
    )


if __name__ == "__main__":
    main()
