"""Test package for chatter gateway unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("chatter").setLevel(logging.WARNING)
