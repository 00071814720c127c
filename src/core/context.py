"""Service context shared by the bridge and the connector.

Built once at startup and passed by reference; nothing in it changes afterwards.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .settings import Settings


@dataclass(frozen=True)
class BridgeContext:
    settings: Settings
    logger: logging.Logger

    def child_logger(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)


def build_context(settings: Settings, *, logger_name: str = "repobridge") -> BridgeContext:
    logger = logging.getLogger(logger_name)
    logger.setLevel(settings.log_level)
    return BridgeContext(settings=settings, logger=logger)
