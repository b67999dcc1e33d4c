# payman_billing/billing/utils/logging_config.py
import logging
import os

from billing.config import LOG_LEVEL, LOG_PATH


# Home directory helper (used for the default log location):
def get_home_directory():
    return os.path.expanduser("~")


def setup_logging(level: str = LOG_LEVEL, log_path: str = LOG_PATH) -> logging.Logger:
    """
    File + console logging for the billing process.
    Returns the configured root logger.
    """
    path = log_path or os.path.join(get_home_directory(), "logs", "billing.log")
    os.makedirs(os.path.dirname(path), exist_ok=True)

    # Base config: logs go to the file
    logging.basicConfig(
        filename=path,
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        filemode='a'
    )

    logger = logging.getLogger()

    # Console handler next to the file one
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # quiet down network libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return logger
