import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """プロセス起動時に一度だけ呼ぶ。"""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # SQL ログは DB_ECHO で制御する
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
