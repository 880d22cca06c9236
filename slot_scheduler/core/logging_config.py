import logging

from slot_scheduler.core import config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or config.LOG_LEVEL).upper(), format=LOG_FORMAT)
    if not config.SQL_ECHO:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
