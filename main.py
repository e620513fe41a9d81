import uvicorn

from quickcollab.config import Settings


def run() -> None:
    settings = Settings.from_env()
    uvicorn.run(
        "quickcollab.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
