import logging
from collections.abc import Iterator

import pytest

from agentflow.logging_setup import ROOT_LOGGER


@pytest.fixture(autouse=True)
def _reset_agentflow_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
