# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import asyncio
import logging
import logging.handlers
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
from textual.app import App
from textual.css.query import QueryError
from textual.logging import TextualHandler
from textual.widgets import RichLog
#
# Local Imports
from .config import get_cli_log_file_path, get_cli_setting
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


# --- Custom Logging Handler ---
class RichLogHandler(logging.Handler):
    """Feeds formatted records into a RichLog widget. Safe to call from worker threads."""

    def __init__(self, rich_log_widget: RichLog):
        super().__init__()
        self.rich_log_widget = rich_log_widget
        self.log_queue: "asyncio.Queue[str]" = asyncio.Queue()
        self.setFormatter(logging.Formatter(
            "{asctime} [{levelname:<8}] {name}:{lineno:<4} : {message}",
            style="{", datefmt=LOG_DATEFMT
        ))
        self._queue_processor_task = None

    def start_processor(self, app: App):
        """Starts the log queue processing task on the running event loop."""
        if not self._queue_processor_task or self._queue_processor_task.done():
            try:
                loop = asyncio.get_running_loop()
                self._queue_processor_task = loop.create_task(self._process_log_queue(), name="RichLogProcessor")
                logging.debug("RichLog queue processor task started.")
            except RuntimeError as e:
                logging.error(f"Failed to get running loop to start log processor: {e}")

    async def stop_processor(self):
        """Cancels the queue processor task and waits for it."""
        if self._queue_processor_task and not self._queue_processor_task.done():
            self._queue_processor_task.cancel()
            try:
                await self._queue_processor_task
            except asyncio.CancelledError:
                logging.debug("RichLog queue processor task cancelled successfully.")
            finally:
                self._queue_processor_task = None

    async def _process_log_queue(self):
        while True:
            message = await self.log_queue.get()
            if self.rich_log_widget.is_mounted:
                self.rich_log_widget.write(message)
            self.log_queue.task_done()

    def emit(self, record: logging.LogRecord):
        """Format the record and put it onto the async queue from whichever thread logged it."""
        try:
            message = self.format(record)
            app = self.rich_log_widget.app
            app._loop.call_soon_threadsafe(self.log_queue.put_nowait, message)
        except Exception:
            self.handleError(record)


def _forward_loguru_to_logging():
    """Routes loguru messages into the standard logging tree so every handler sees them."""
    loguru_logger.remove()
    level_mapping = {
        "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
        "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    def sink_to_standard_logging(message):
        record = message.record
        std_level = level_mapping.get(record["level"].name, logging.INFO)
        std_logger = logging.getLogger(record["name"])
        if record["exception"]:
            std_logger.log(std_level, record["message"], exc_info=record["exception"])
        else:
            std_logger.log(std_level, record["message"])

    loguru_logger.add(sink_to_standard_logging, format="{message}", level="TRACE")


def configure_application_logging(app_instance) -> None:
    """Sets up all logging handlers, including Loguru integration."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _forward_loguru_to_logging()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    level_name = str(get_cli_setting("general", "log_level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger.setLevel(level)

    # --- TextualHandler (dev console) ---
    textual_handler = TextualHandler()
    textual_handler.setLevel(level)
    textual_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger.addHandler(textual_handler)

    # --- RichLog panel ---
    try:
        log_widget = app_instance.query_one("#app-log-display", RichLog)
        app_instance._rich_log_handler = RichLogHandler(log_widget)
        app_instance._rich_log_handler.setLevel(level)
        root_logger.addHandler(app_instance._rich_log_handler)
        app_instance._rich_log_handler.start_processor(app_instance)
    except QueryError:
        logging.error("Failed to find #app-log-display widget for RichLogHandler setup.")
        app_instance._rich_log_handler = None

    # --- Rotating file ---
    try:
        log_file_path = get_cli_log_file_path()
        max_bytes = int(get_cli_setting("logging", "log_max_bytes", 10485760))
        backup_count = int(get_cli_setting("logging", "log_backup_count", 5))
        file_level_name = str(get_cli_setting("logging", "file_log_level", "INFO")).upper()
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        file_handler.setLevel(getattr(logging, file_level_name, logging.INFO))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file '{log_file_path}' at {file_level_name}.")
    except OSError as e:
        logging.warning(f"File logging disabled: {e}")

    handler_levels = [h.level for h in root_logger.handlers if h.level > 0]
    if handler_levels and root_logger.level > min(handler_levels):
        root_logger.setLevel(min(handler_levels))
    logging.info(f"Logging setup complete. Root level: {logging.getLevelName(root_logger.level)}")

#
# End of Logging_Config.py
########################################################################################################################
