import logging

from storyboard_video.config import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging() -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; uvicorn may reconfigure its own loggers after
    import, so this runs from the app lifespan rather than at import time.
    """
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if not any(getattr(h, "_storyboard_video", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._storyboard_video = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
