import logging
import os
import sys
from datetime import datetime

from streamvault.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def configure_logging(level: int = logging.INFO, log_dir: str = None) -> None:
    """configure stdout + daily file logging for api and worker processes"""
    log_dir = log_dir or settings.LOG_DIR
    handlers = [logging.StreamHandler(sys.stdout)]

    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.FileHandler(
                os.path.join(log_dir, f'streamvault_{datetime.now().strftime("%Y%m%d")}.log'),
                mode='a'
            )
        )
    except OSError as e:
        # read-only filesystems (containers, ci) still get stdout logging
        print(f"file logging disabled, cannot use {log_dir}: {e}")

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # googleapiclient is very chatty at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

def get_logger(name: str) -> logging.Logger:
    """get a configured logger instance"""
    return logging.getLogger(name)
