import logging


class Engine:
    """Base class for all Engines"""

    def __init__(self):
        self.logger = logging.getLogger(f'saive.engines.{type(self).__name__}')

    def log_error(self, content: str) -> None:
        self.logger.error(content)

    def message(self, content: str) -> None:
        """Report progress to the package logger"""

        self.logger.info(content)

    def warning(self, content: str) -> None:
        """Report a recovered failure"""

        self.logger.warning(content)
