"""Utility modules"""
from .logger import get_logger, setup_logging
