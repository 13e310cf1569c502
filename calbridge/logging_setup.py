import logging

from calbridge.config import LOG_FORMAT


def configure_logging(level: str = 'INFO', quiet_http: bool = True):
    """Configure root logging for CLI entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )

    if quiet_http:
        # googleapiclient logs every discovery fetch at INFO
        logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
