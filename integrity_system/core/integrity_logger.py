#!/usr/bin/env python3
"""
Coded loggers for the integrity engine.

Every log line starts with a short code (APPEND_CONFLICT, WITNESS_RETRY, ...)
so log searches don't depend on message wording. Context dicts ride along in
`extra` and are echoed on a second line when present.
"""

import logging
import os
from typing import Dict, Any, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class IntegrityLogger:
    """Named logger with code-prefixed messages"""

    def __init__(self, name: str, level: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level or os.getenv('INTEGRITY_LOG_LEVEL', 'INFO'))

        # Add console handler if not already present
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(handler)

    def _log(self, level: int, code: str, message: str, context: Optional[Dict[str, Any]]):
        self.logger.log(level, f"{code}: {message}", extra={"context": context or {}})
        if context:
            self.logger.log(level, f"Context: {context}")

    def log_error(self, code: str, message: str, context: Dict[str, Any] = None):
        """Log an error with context"""
        self._log(logging.ERROR, code, message, context)

    def log_warning(self, code: str, message: str, context: Dict[str, Any] = None):
        """Log a warning with context"""
        self._log(logging.WARNING, code, message, context)

    def log_info(self, code: str, message: str, context: Dict[str, Any] = None):
        """Log an informational message with context"""
        self._log(logging.INFO, code, message, context)

    def log_debug(self, code: str, message: str, context: Dict[str, Any] = None):
        self._log(logging.DEBUG, code, message, context)


# One logger per component
ledger_logger = IntegrityLogger("integrity_ledger")
checkpoint_logger = IntegrityLogger("integrity_checkpoints")
witness_logger = IntegrityLogger("integrity_witness")
certificate_logger = IntegrityLogger("integrity_certificates")
verifier_logger = IntegrityLogger("integrity_verifier")
service_logger = IntegrityLogger("integrity_service")
