import copy
import logging
import re
import sys

RESET = '\033[0m'
BOLD = '\033[1m'
MAGENTA = '\033[95m'
CYAN = '\033[96m'
YELLOW = '\033[93m'

LEVEL_COLORS = {
    'DEBUG': CYAN,
    'INFO': '\033[92m',
    'WARNING': YELLOW,
    'ERROR': '\033[91m',
    'CRITICAL': BOLD + '\033[91m',
}

# Applied to the message only, so the timestamp is never mistaken for an address
HIGHLIGHTS = (
    (re.compile(r'\bPRIMARY\b'), BOLD + MAGENTA),
    (re.compile(r'\b(?:SECONDARY|ARBITER)\b'), CYAN),
    (re.compile(r'\bReplicaSet\b'), BOLD),
    # member addresses: 'mongo1:27017', '10.0.0.2:27017'
    (re.compile(r'\b[\w.-]+:\d{2,5}\b'), YELLOW),
)


def highlight(message):
    for pattern, color in HIGHLIGHTS:
        message = pattern.sub(lambda m: f"{color}{m.group(0)}{RESET}", message)
    return message


class ColoredFormatter(logging.Formatter):
    """Colors the level name, member roles and member addresses of each record."""

    def format(self, record):
        # other handlers must still see the plain record
        record = copy.copy(record)
        record.msg, record.args = highlight(record.getMessage()), None
        record.levelname = f"{LEVEL_COLORS.get(record.levelname, '')}{record.levelname}{RESET}"
        return super().format(record)


def configure_logging(debug=False, stream=None):
    """Send colored logs to stdout, replacing any handler already installed on the root logger."""
    formatter = ColoredFormatter(
        fmt='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Keep driver and SDK chatter out unless troubleshooting them
    for name in ("urllib3", "docker.utils.config", "pymongo", "pymongo.pool",
                 "pymongo.topology", "pymongo.server", "backoff"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
