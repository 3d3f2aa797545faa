#!/usr/bin/env python3
"""
Integrity Engine Configuration
Environment-driven settings for ledger storage, checkpoint policy and witnessing
"""
import os

from dotenv import load_dotenv

# Load environment variables before the class attributes read them
load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() == 'true'


class IntegrityConfig:
    """Configuration for the process-integrity engine"""

    # Storage
    STORAGE_DIR = os.getenv('INTEGRITY_STORAGE_DIR', '')          # Empty = in-memory only
    KEY_DIR = os.getenv('INTEGRITY_KEY_DIR', '')                  # Empty = keys held in memory

    # Checkpoint policy
    CHECKPOINT_EVERY = int(os.getenv('INTEGRITY_CHECKPOINT_EVERY', 10))
    CHECKPOINT_HOURS = float(os.getenv('INTEGRITY_CHECKPOINT_HOURS', 0))   # 0 = no time trigger
    AUTO_CHECKPOINT = _env_bool('INTEGRITY_AUTO_CHECKPOINT', 'true')

    # Witness gateway
    WITNESS_URL = os.getenv('INTEGRITY_WITNESS_URL', '')          # Empty = local witness
    WITNESS_TIMEOUT_SECONDS = int(os.getenv('INTEGRITY_WITNESS_TIMEOUT', 10))
    WITNESS_MAX_ATTEMPTS = int(os.getenv('INTEGRITY_WITNESS_MAX_ATTEMPTS', 5))
    WITNESS_BASE_DELAY = float(os.getenv('INTEGRITY_WITNESS_BASE_DELAY', 1.0))
    WITNESS_MAX_DELAY = float(os.getenv('INTEGRITY_WITNESS_MAX_DELAY', 60.0))
    WITNESS_WORKERS = int(os.getenv('INTEGRITY_WITNESS_WORKERS', 2))

    # Certificates
    ALLOW_RECENCY_PROOFS = _env_bool('INTEGRITY_ALLOW_RECENCY_PROOFS', 'false')

    # Appends
    APPEND_MAX_RETRIES = int(os.getenv('INTEGRITY_APPEND_MAX_RETRIES', 5))

    # Service
    SERVICE_HOST = os.getenv('INTEGRITY_HOST', '0.0.0.0')
    SERVICE_PORT = int(os.getenv('INTEGRITY_PORT', 8010))
    DEBUG = _env_bool('INTEGRITY_DEBUG', 'false')

    # Logging
    LOG_LEVEL = os.getenv('INTEGRITY_LOG_LEVEL', 'INFO')

    @classmethod
    def get_witness_config(cls):
        """Witness retry settings as a dict"""
        return {
            'url': cls.WITNESS_URL or None,
            'timeout': cls.WITNESS_TIMEOUT_SECONDS,
            'max_attempts': cls.WITNESS_MAX_ATTEMPTS,
            'base_delay': cls.WITNESS_BASE_DELAY,
            'max_delay': cls.WITNESS_MAX_DELAY,
        }

    @classmethod
    def validate_config(cls):
        """Validate configuration settings"""
        issues = []

        if cls.CHECKPOINT_EVERY < 1:
            issues.append("CHECKPOINT_EVERY must be at least 1")

        if cls.CHECKPOINT_HOURS < 0:
            issues.append("CHECKPOINT_HOURS must be >= 0")

        if cls.WITNESS_MAX_ATTEMPTS < 1:
            issues.append("WITNESS_MAX_ATTEMPTS must be at least 1")

        if cls.WITNESS_BASE_DELAY < 0 or cls.WITNESS_MAX_DELAY < cls.WITNESS_BASE_DELAY:
            issues.append("WITNESS_BASE_DELAY must be >= 0 and <= WITNESS_MAX_DELAY")

        if cls.SERVICE_PORT < 1024 or cls.SERVICE_PORT > 65535:
            issues.append("SERVICE_PORT must be between 1024 and 65535")

        if cls.APPEND_MAX_RETRIES < 1:
            issues.append("APPEND_MAX_RETRIES must be at least 1")

        return issues


# Environment-specific configurations
class DevelopmentConfig(IntegrityConfig):
    """Development environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(IntegrityConfig):
    """Production environment configuration"""
    DEBUG = False
    LOG_LEVEL = 'INFO'


class TestConfig(IntegrityConfig):
    """Test environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    STORAGE_DIR = ''
    KEY_DIR = ''
    WITNESS_URL = ''
    WITNESS_BASE_DELAY = 0.0
    WITNESS_MAX_DELAY = 0.0
    CHECKPOINT_HOURS = 0.0
    AUTO_CHECKPOINT = True


# Configuration factory
def get_config(env=None):
    """Get configuration based on environment"""
    env = env or os.getenv('INTEGRITY_ENV', 'development')

    configs = {
        'development': DevelopmentConfig,
        'production': ProductionConfig,
        'test': TestConfig
    }

    return configs.get(env, DevelopmentConfig)
