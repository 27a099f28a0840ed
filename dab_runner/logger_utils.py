"""
Logging utilities for readable output with multiple concurrent browser sessions
"""
import logging
import re
import threading
from datetime import datetime
from logging.handlers import RotatingFileHandler

ANSI_RE = re.compile(r'\x1b\[[0-9;]*m')

# Python logging level used for each of our levels in the file log
FILE_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'SUCCESS': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


class ColoredLogger:
    """Thread-safe colored logger with session prefixes"""

    RESET = '\033[0m'
    PALETTE = {
        'red': '\033[91m',
        'green': '\033[92m',
        'yellow': '\033[93m',
        'blue': '\033[94m',
        'magenta': '\033[95m',
        'cyan': '\033[96m',
        'white': '\033[97m',
        'gray': '\033[90m',
    }

    # Session tags cycle through these
    TAG_COLORS = ('cyan', 'magenta', 'yellow', 'blue', 'green')

    # level -> (rank, color); SUCCESS shares INFO's rank
    LEVELS = {
        'ERROR': (0, 'red'),
        'WARNING': (1, 'yellow'),
        'INFO': (2, 'white'),
        'SUCCESS': (2, 'green'),
        'DEBUG': (3, 'gray'),
    }

    # Config log_level names -> threshold rank
    THRESHOLDS = {'error': 0, 'warn': 1, 'info': 2, 'debug': 3}

    _lock = threading.Lock()
    _tag_colors = {}
    _threshold = 2
    _sinks = []
    _file_logger = None
    _console = None  # None = sys.stdout at call time

    @classmethod
    def enable_file_logging(cls, log_file="dab_runner.log", max_bytes=10*1024*1024, backup_count=5):
        """Mirror every line, uncolored, into a rotating log file"""
        if cls._file_logger is not None:
            return
        file_logger = logging.getLogger('dab_runner.file')
        file_logger.setLevel(logging.DEBUG)
        file_logger.propagate = False

        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
        file_logger.addHandler(handler)
        cls._file_logger = file_logger

    @classmethod
    def set_console_stream(cls, stream):
        """Send console lines to ``stream`` (None restores stdout)"""
        with cls._lock:
            cls._console = stream

    @classmethod
    def set_level(cls, level_name):
        """Apply a config log_level (error|warn|info|debug); unknown names mean info"""
        with cls._lock:
            cls._threshold = cls.THRESHOLDS.get(str(level_name or '').lower(), 2)

    @classmethod
    def add_sink(cls, sink):
        """Forward every emitted line to ``sink(level, text)``"""
        with cls._lock:
            if sink not in cls._sinks:
                cls._sinks.append(sink)

    @classmethod
    def remove_sink(cls, sink):
        with cls._lock:
            if sink in cls._sinks:
                cls._sinks.remove(sink)

    @classmethod
    def is_enabled_for(cls, level):
        rank, _ = cls.LEVELS.get(level, (2, None))
        return rank <= cls._threshold

    @classmethod
    def _paint(cls, text, color):
        return f"{cls.PALETTE.get(color, '')}{text}{cls.RESET}"

    @classmethod
    def _color_for_tag(cls, tag):
        color = cls._tag_colors.get(tag)
        if color is None:
            color = cls.TAG_COLORS[len(cls._tag_colors) % len(cls.TAG_COLORS)]
            cls._tag_colors[tag] = color
        return color

    @classmethod
    def _write(cls, line, level):
        # caller holds the lock
        print(line, file=cls._console, flush=True)
        plain = ANSI_RE.sub('', line)
        if cls._file_logger is not None:
            cls._file_logger.log(FILE_LEVELS.get(level, logging.INFO), plain)
        for sink in list(cls._sinks):
            try:
                sink(level, plain)
            except Exception as e:
                print(f"⚠️ Log sink error: {e}", file=cls._console)

    @classmethod
    def _emit(cls, tag, message, level, message_color):
        if not cls.is_enabled_for(level):
            return
        with cls._lock:
            parts = [cls._paint(f"[{datetime.now():%H:%M:%S}]", 'gray')]
            if tag:
                label = tag if tag.startswith('[') else f"[{tag}]"
                parts.append(cls._paint(label, cls._color_for_tag(tag)))
            parts.append(cls._paint(f"[{level}] {message}", message_color))
            cls._write(' '.join(parts), level)

    @classmethod
    def log(cls, tag, message, level='INFO'):
        """
        Log a line prefixed with a colored session tag

        Args:
            tag: Session tag (e.g. "Acc1"); falsy logs a process-wide line
            message: Log message
            level: DEBUG, INFO, SUCCESS, WARNING, ERROR
        """
        if not tag:
            cls.log_status(message, level)
            return
        cls._emit(tag, message, level, cls.LEVELS.get(level, (2, 'white'))[1])

    @classmethod
    def log_status(cls, message, level='INFO'):
        """Log process-wide status (no session prefix)"""
        color = 'cyan' if level == 'INFO' else cls.LEVELS.get(level, (2, 'cyan'))[1]
        cls._emit(None, message, level, color)

    @classmethod
    def log_separator(cls, title=None):
        if title:
            banner = f"\n{'=' * 60}\n  {title}\n{'=' * 60}"
        else:
            banner = '─' * 60
        with cls._lock:
            print(banner, file=cls._console, flush=True)
            if cls._file_logger is not None:
                cls._file_logger.info(banner)

    @classmethod
    def reset(cls):
        """Reset colors, sinks and threshold (for testing)"""
        with cls._lock:
            cls._tag_colors = {}
            cls._threshold = 2
            cls._sinks = []
            cls._console = None
