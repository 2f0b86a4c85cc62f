from relay.logging_config import setup_logging
from relay.routes import create_app


# Configure logging once for the whole process.
setup_logging()

# FastAPI application instance for uvicorn.
app = create_app()


def run() -> None:
    import os

    import uvicorn

    # Use our own logging configuration configured in relay.logging_config.
    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run("main:app", host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    run()
