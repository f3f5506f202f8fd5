"""Persistence layer for the prediction engine."""

from .base import PredictionStore, StoreError
from .sql import SQLPredictionStore

__all__ = [
    'PredictionStore',
    'StoreError',
    'SQLPredictionStore',
]
