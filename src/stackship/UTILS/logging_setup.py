"""
Logging configuration. Log records go to stderr so JSON results on stdout stay parseable.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

class _StderrHandler(logging.StreamHandler):
    """
    Writes to whatever sys.stderr is at emit time.
    """
    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value):
        pass

def setup_logging(level: str = "INFO") -> None:
    """
    Configures the root logger once; later calls only change the level.
    """
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    root = logging.getLogger()
    if not any(isinstance(h, _StderrHandler) for h in root.handlers):
        handler = _StderrHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(numeric)
