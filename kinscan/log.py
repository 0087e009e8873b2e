import logging


LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name="kinscan", log_file="kinscan.log", level=logging.INFO):
    """Logger writing every record to ``log_file`` and to the console."""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # handlers are attached once per process
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    fh = logging.FileHandler(log_file)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


def set_console_level(level):
    """Change the console threshold only; the log file keeps every record."""
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


logger = setup_logger()
