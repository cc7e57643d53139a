import logging

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name):
    logger = logging.getLogger(name)
    if not logging.getLogger("rendezvous").hasHandlers():
        configure_logging()
    return logger


def configure_logging(level=logging.DEBUG):
    """Attach the stream handler to the package logger once; later calls only change the level."""
    root = logging.getLogger("rendezvous")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root.setLevel(level)
    if not root.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(logging.DEBUG)
        ch.setFormatter(logging.Formatter(FORMAT))
        root.addHandler(ch)
    return root
