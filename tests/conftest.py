from __future__ import annotations

from typing import Iterator

import pytest

import docker_cron


@pytest.fixture(autouse=True)
def _reset_docker_cron_logger() -> Iterator[None]:
    yield
    for handler in list(docker_cron.logger.handlers):
        docker_cron.logger.removeHandler(handler)
        handler.close()
    docker_cron.logger.setLevel("NOTSET")
