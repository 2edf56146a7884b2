"""Pole-based adaptive price prediction."""
from .predictor import PolePredictor, Prediction, Direction, Signal

__all__ = ["PolePredictor", "Prediction", "Direction", "Signal"]
