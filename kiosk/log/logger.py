"""
Hierarchical kiosk logger with automatic name detection.

Features:
- Auto-detects logger hierarchy from call stack (computed once, cached)
- Single rotating kiosk.log inside the installation data directory
- Global disk cap enforced every time a log file rolls over
- Structured field logging: log.info("Saved", path=p, bytes=n)

Usage:
    from kiosk.log import getLogger

    class ConfigStore:
        def __init__(self):
            self.log = getLogger()  # Auto: 'kiosk.core.configStore.ConfigStore'

    log = getLogger()  # Module-level, auto-detected once at import

Property of Uncompromising Sensors LLC.
"""

# Imports
import inspect, logging, logging.handlers, os, socket
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone as tz

from .context import StationContextFilter


# Global state
_hostname = socket.gethostname()
_configured = False
_fileHandlers = {}  # Singleton cache: logPath -> handler
_config = {
    'logDir': None,
    'maxBytes': 5_000_000,          # 5 MB per log file before rotation
    'backupCount': 5,
    'maxTotalMb': 100,              # Kiosk disks are small
    'console': True,
    'level': logging.INFO,
    'utc': False
}

# Record attributes that are never rendered as structured fields
_RESERVED_FIELDS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'taskName', 'exc_info',
    'exc_text', 'stack_info', 'hostname', 'asctime'
}


def configureLogging(logDir: Optional[str] = None, maxBytes: int = 5_000_000,
                     backupCount: int = 5, maxTotalMb: int = 100,
                     console: bool = True, level: str = 'INFO', utc: bool = False):
    """
    Configure global logging settings (call once at app startup).

    Loggers created earlier (module-level loggers bound at import) are moved
    onto the configured directory and level.

    Args:
        logDir: Directory for log files (default: ./logs under the working directory)
        maxBytes: Maximum size per log file before rotation
        backupCount: Number of rotated files to keep
        maxTotalMb: Maximum total disk usage across all logs in MB
        console: Also log to console
        level: Minimum log level name
        utc: Use UTC timestamps instead of local time
    """
    global _configured, _config

    if logDir is None:
        logDir = _defaultLogDir()

    _config.update({'logDir': logDir, 'maxBytes': maxBytes, 'backupCount': backupCount, 'maxTotalMb': maxTotalMb,
                    'console': console, 'level': getattr(logging, level.upper(), logging.INFO), 'utc': utc})

    Path(logDir).mkdir(parents=True, exist_ok=True)
    _configured = True
    _repointHandlers()


def _defaultLogDir() -> str:
    return os.path.abspath(os.path.join(os.getcwd(), "logs"))


def _kioskLoggers():
    """Loggers set up by getLogger() so far"""
    for logger in list(logging.Logger.manager.loggerDict.values()):
        if isinstance(logger, logging.Logger) and getattr(logger, '_configured_by_kiosk', False):
            yield logger


def _createFileHandler(logPath: str) -> 'DiskCappedFileHandler':
    # delay: nothing is created on disk until the first record is written
    fileHandler = DiskCappedFileHandler(
        logPath,
        maxBytes=_config['maxBytes'],
        backupCount=_config['backupCount'],
        encoding='utf-8',
        delay=True
    )
    fileHandler.setLevel(_config['level'])
    fileHandler.addFilter(StationContextFilter())
    fileHandler.setFormatter(StructuredFormatter(
        '%(asctime)s - %(hostname)s - %(name)s - %(levelname)s - %(message)s',
        utc=_config['utc']
    ))
    return fileHandler


def _repointHandlers():
    """Swap file handlers created before configureLogging() for ones in the configured logDir"""
    loggers = list(_kioskLoggers())
    for logger in loggers:
        logger.setLevel(_config['level'])
        for handler in logger.handlers:
            handler.setLevel(_config['level'])

    for oldPath, oldHandler in list(_fileHandlers.items()):
        newPath = str(Path(_config['logDir']) / Path(oldPath).name)
        if newPath == oldPath:
            continue

        newHandler = _fileHandlers.get(newPath) or _createFileHandler(newPath)
        del _fileHandlers[oldPath]
        _fileHandlers[newPath] = newHandler

        for logger in loggers:
            if oldHandler in logger.handlers:
                logger.removeHandler(oldHandler)
                logger.addHandler(newHandler)
        oldHandler.close()


def _autoDetectName() -> str:
    """Auto-detect logger name from call stack. Returns hierarchy like: 'kiosk.core.adminGate.AdminGate'"""

    frame = inspect.currentframe()
    try:
        current = frame
        while current is not None:
            current = current.f_back
            if current is None:
                break

            module = inspect.getmodule(current)
            if module is None:
                continue

            moduleName = module.__name__

            # Skip frames inside this package
            if moduleName.startswith('kiosk.log'):
                continue

            # Skip Python's import machinery
            if moduleName.startswith('importlib'):
                continue

            parts = moduleName.split('.')
            if moduleName == '__main__':
                parts = ['kiosk', 'main']

            className = None
            if current.f_locals:
                if 'self' in current.f_locals:
                    className = current.f_locals['self'].__class__.__name__
                elif 'cls' in current.f_locals:
                    className = current.f_locals['cls'].__name__

            hierarchy = '.'.join(parts) if parts else 'unknown'
            if className:
                hierarchy = f"{hierarchy}.{className}"

            return hierarchy if hierarchy else 'unknown'

        return 'unknown'
    finally:
        del frame


class StructuredFormatter(logging.Formatter):
    """Formatter that includes hostname and structured fields.
    Format: timestamp - hostname - logger.name - level - message [field1=value1, field2=value2]"""

    def __init__(self, fmt=None, datefmt=None, utc=False):
        super().__init__(fmt, datefmt)
        self.utc = utc

    def formatTime(self, record, datefmt=None):
        if self.utc:
            ct = datetime.fromtimestamp(record.created, tz=tz.utc)
        else:
            ct = datetime.fromtimestamp(record.created)

        if datefmt:
            s = ct.strftime(datefmt)
        else:
            s = ct.strftime("%Y-%m-%d %H:%M:%S")
            s = f"{s},{int(record.msecs):03d}"
        return s

    def format(self, record):
        record.hostname = _hostname

        structuredFields = []
        for key, value in record.__dict__.items():
            if key not in _RESERVED_FIELDS and not key.startswith('_'):
                structuredFields.append(f"{key}={value}")

        # Restore the original message afterwards so other handlers see it untouched
        originalMsg = record.msg
        if structuredFields:
            record.msg = f"{originalMsg} [{', '.join(structuredFields)}]"

        try:
            return super().format(record)
        finally:
            record.msg = originalMsg


class DiskCappedFileHandler(logging.handlers.RotatingFileHandler):
    """Rotating handler that trims the whole log directory after each rollover."""

    def _open(self):
        Path(self.baseFilename).parent.mkdir(parents=True, exist_ok=True)
        return super()._open()

    def doRollover(self):
        super().doRollover()
        _enforceDiskLimit()


def getLogger(name: Optional[str] = None) -> logging.Logger:
    """
    Get or create a logger with automatic hierarchy detection.

    All kiosk loggers share one file (named after the top-level package) and
    accept structured fields as keyword arguments.

    Args:
        name: Logger name (auto-detected from call stack if None)

    Returns:
        logging.Logger whose level methods accept **fields
    """
    # Unconfigured: default directory, created only when a record is written
    if not _configured and _config['logDir'] is None:
        _config['logDir'] = _defaultLogDir()

    if name is None:
        name = _autoDetectName()

    logger = logging.getLogger(name)

    # Handlers are attached per logger; propagation would duplicate every line
    logger.propagate = False

    if not logger.handlers and not hasattr(logger, '_configured_by_kiosk'):
        logger.setLevel(_config['level'])

        appName = name.split('.')[0]
        logPath = str(Path(_config['logDir']) / f"{appName}.log")

        if logPath not in _fileHandlers:
            _fileHandlers[logPath] = _createFileHandler(logPath)

        logger.addHandler(_fileHandlers[logPath])

        if _config['console']:
            consoleHandler = logging.StreamHandler()
            consoleHandler.setLevel(_config['level'])
            consoleHandler.addFilter(StationContextFilter())
            consoleHandler.setFormatter(StructuredFormatter(
                '%(name)s - %(levelname)s - %(message)s',
                utc=_config['utc']
            ))
            logger.addHandler(consoleHandler)

        logger._configured_by_kiosk = True

    return _wrapLogger(logger)


def _wrapLogger(logger: logging.Logger) -> logging.Logger:
    """
    Wrap a standard logger so level methods accept structured fields as **kwargs.

    This allows: log.info("Message", field1=value1)
    Instead of: log.info("Message", extra={'field1': value1})
    """
    if hasattr(logger, '_is_wrapped'):
        return logger

    def _wrap(original):
        def method(msg, *args, **kwargs):
            # exc_info and stack_info are reserved logging params
            excInfo = kwargs.pop('exc_info', False)
            stackInfo = kwargs.pop('stack_info', False)
            if kwargs:
                original(msg, *args, extra=kwargs, exc_info=excInfo, stack_info=stackInfo)
            else:
                original(msg, *args, exc_info=excInfo, stack_info=stackInfo)
        return method

    logger.debug = _wrap(logger.debug)
    logger.info = _wrap(logger.info)
    logger.warning = _wrap(logger.warning)
    logger.error = _wrap(logger.error)
    logger.critical = _wrap(logger.critical)
    logger._is_wrapped = True

    return logger


def _enforceDiskLimit():
    """
    Remove the oldest log files until the directory is under maxTotalMb.

    Runs on every rollover of a DiskCappedFileHandler.
    """
    logDir = Path(_config['logDir'])
    maxBytes = _config['maxTotalMb'] * 1024 * 1024

    files = []
    totalSize = 0
    try:
        for filepath in logDir.rglob('*.log*'):
            if filepath.is_file():
                stat = filepath.stat()
                files.append((stat.st_mtime, stat.st_size, filepath))
                totalSize += stat.st_size
    except OSError:
        return

    if totalSize <= maxBytes:
        return

    files.sort(key=lambda x: x[0])

    for mtime, size, filepath in files:
        if totalSize <= maxBytes:
            break
        # Never delete the file currently being written
        if filepath.suffix == '.log':
            continue
        try:
            filepath.unlink()
            totalSize -= size
        except OSError:
            pass
