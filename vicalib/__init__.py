import logging

formatter = logging.Formatter(
    fmt="[%(asctime)s %(name)s %(levelname)s] %(message)s",
    datefmt="%Y/%m/%d %H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
handler.setLevel(logging.INFO)

logger = logging.getLogger("vicalib")
logger.setLevel(logging.INFO)
logger.addHandler(handler)
logger.propagate = False

__version__ = "0.1.0"
