"""
Track prediction module for pyctcrw.

- Smoother: Rauch-Tung-Striebel backward pass over a filter result
- Prediction: Smoothed states at observation times and any requested times
"""

from pyctcrw.predicting.smoother import (
    StateEstimate,
    Track,
    predict,
    prediction_times,
    rts_smoother,
)

__all__ = [
    'StateEstimate',
    'Track',
    'rts_smoother',
    'prediction_times',
    'predict',
]
