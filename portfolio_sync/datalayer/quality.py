"""
Data quality report for one ingestion run.

Append-only lists of warnings, errors and info messages. Recording an entry
never raises; every entry is also logged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


@dataclass
class DataQualityReport:
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    info: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(f"[DATA WARNING] {message}")

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        logger.error(f"[DATA ERROR] {message}")

    def add_info(self, message: str) -> None:
        self.info.append(message)
        logger.info(f"[DATA INFO] {message}")

    @property
    def has_issues(self) -> bool:
        return bool(self.warnings) or bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'warnings': list(self.warnings),
            'errors': list(self.errors),
            'info': list(self.info),
            'has_issues': self.has_issues,
        }
