"""
Adaptive Pole Predictor

Online multi-feature linear regression over a smoothed price series.
Predictions are only emitted at local peaks and troughs ("poles"); every
other update just feeds the history.

Pipeline per raw price:
- range gate (0.003 - 0.97)
- noise gate against the last accepted raw price (< 0.02 is dropped)
- EMA smoothing, bounded history (10 points)
- pole detection over a 3 point lookback
- features, prediction, online weight update, confidence, direction, signal

Weights survive reset() so learning carries across market windows.
"""

from collections import deque
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Optional

import numpy as np

from ..utils.logger import get_logger

logger = get_logger("predictor")


class Direction(Enum):
    """Predicted move. There is no neutral value."""
    UP = "up"
    DOWN = "down"


class Signal(Enum):
    """Trading signal derived from a prediction."""
    BUY_UP = "BUY_UP"
    BUY_DOWN = "BUY_DOWN"
    HOLD = "HOLD"


class PoleType(Enum):
    PEAK = "peak"
    TROUGH = "trough"


@dataclass
class PricePoint:
    """Single smoothed observation."""
    value: float
    timestamp: float


@dataclass
class Pole:
    """Detected local extremum in the smoothed series."""
    value: float
    type: PoleType
    timestamp: float


@dataclass
class FeatureVector:
    """Normalized regression inputs."""
    price_lag1: float
    price_lag2: float
    price_lag3: float
    momentum: float     # [-1, 1]
    volatility: float   # [0, 1]
    trend: float        # [-1, 1]


@dataclass
class PredictionFeatures:
    """Feature subset reported with a prediction."""
    momentum: float
    volatility: float
    trend: float


@dataclass
class Prediction:
    """Forecast emitted at a pole."""
    predicted_price: float
    confidence: float  # [0.40, 0.92]
    direction: Direction
    signal: Signal
    features: PredictionFeatures
    price: float = 0.0  # Smoothed price the forecast was made from
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            "predicted_price": round(self.predicted_price, 4),
            "confidence": round(self.confidence, 4),
            "direction": self.direction.value,
            "signal": self.signal.value,
            "momentum": round(self.features.momentum, 4),
            "volatility": round(self.features.volatility, 4),
            "trend": round(self.features.trend, 4),
        }


@dataclass
class ModelWeights:
    """Linear model coefficients."""
    intercept: float = 0.5
    price_lag1: float = 0.25
    price_lag2: float = 0.08
    price_lag3: float = 0.04
    momentum: float = 0.35
    volatility: float = -0.20
    trend: float = 0.45

    def predict(self, features: FeatureVector) -> float:
        """Weighted sum in normalized price space."""
        return (
            self.intercept
            + self.price_lag1 * features.price_lag1
            + self.price_lag2 * features.price_lag2
            + self.price_lag3 * features.price_lag3
            + self.momentum * features.momentum
            + self.volatility * features.volatility
            + self.trend * features.trend
        )

    def apply_gradient(
        self,
        features: FeatureVector,
        error: float,
        learning_rate: float,
        decay: float
    ) -> None:
        """w = w * decay + learning_rate * error * feature (intercept feature is 1)."""
        self.intercept = self.intercept * decay + learning_rate * error
        for f in fields(FeatureVector):
            current = getattr(self, f.name)
            setattr(
                self,
                f.name,
                current * decay + learning_rate * error * getattr(features, f.name),
            )


@dataclass
class AccuracyRecord:
    """One scored pole prediction for the rolling calibration window."""
    correct: bool
    confidence: float


@dataclass
class AccuracyStats:
    accuracy: float
    total_predictions: int
    correct_predictions: int


class PolePredictor:
    """
    Adaptive online price predictor.

    Owned by exactly one market. Call update() with every observed price;
    a Prediction comes back only when the smoothed series forms a new pole.
    """

    MIN_PRICE = 0.003
    MAX_PRICE = 0.97
    NOISE_THRESHOLD = 0.02
    SMOOTHING_ALPHA = 0.5
    MAX_HISTORY = 10
    MAX_POLES = 10
    POLE_LOOKBACK = 3
    MAX_STABLE_COUNT = 5

    ALPHA_SHORT = 2 / (2 + 1)
    ALPHA_LONG = 2 / (5 + 1)

    LEARNING_RATE = 0.05
    MIN_LEARNING_RATE = 0.005
    MAX_LEARNING_RATE = 0.2

    RECENT_WINDOW = 20
    CONFIDENCE_FLOOR = 0.40
    CONFIDENCE_CEILING = 0.92

    def __init__(self, weights: Optional[ModelWeights] = None):
        """
        Initialize predictor.

        Args:
            weights: Starting coefficients, defaults to the tuned initial set
        """
        self.weights = weights or ModelWeights()

        self._history: deque[PricePoint] = deque(maxlen=self.MAX_HISTORY)
        self._poles: deque[Pole] = deque(maxlen=self.MAX_POLES)
        self._smoothed: Optional[float] = None
        self._last_raw: Optional[float] = None
        self._stable_count = 0

        self._ema_short = 0.5
        self._ema_long = 0.5

        # Normalization statistics, refreshed at every pole
        self._price_mean = 0.5
        self._price_std = 0.1

        self._prediction_count = 0
        self._correct_predictions = 0
        self._recent: deque[AccuracyRecord] = deque(maxlen=self.RECENT_WINDOW)
        self._last_prediction: Optional[Prediction] = None

    @property
    def history(self) -> list[PricePoint]:
        return list(self._history)

    @property
    def poles(self) -> list[Pole]:
        return list(self._poles)

    @property
    def last_pole(self) -> Optional[Pole]:
        return self._poles[-1] if self._poles else None

    @property
    def last_prediction(self) -> Optional[Prediction]:
        return self._last_prediction

    @property
    def stable_count(self) -> int:
        return self._stable_count

    @property
    def ema(self) -> tuple[float, float]:
        """(short, long) trend EMAs."""
        return self._ema_short, self._ema_long

    def update(self, raw_price: float, timestamp: float) -> Optional[Prediction]:
        """
        Feed one raw price observation.

        Args:
            raw_price: Observed price in [0, 1]
            timestamp: Observation time (seconds)

        Returns:
            Prediction if the point is a new pole, otherwise None
        """
        if not self._in_band(raw_price):
            return None

        if self._smoothed is None:
            self._smoothed = raw_price
            self._last_raw = raw_price
            self._history.append(PricePoint(raw_price, timestamp))
            return None

        if abs(raw_price - self._last_raw) < self.NOISE_THRESHOLD:
            return None

        smoothed = self.SMOOTHING_ALPHA * raw_price + (1 - self.SMOOTHING_ALPHA) * self._smoothed
        if not self._in_band(smoothed):
            return None

        previous = self._history[-1].value
        if abs(smoothed - previous) < self.NOISE_THRESHOLD:
            self._stable_count += 1
        else:
            self._stable_count = 0

        self._smoothed = smoothed
        self._last_raw = raw_price
        self._history.append(PricePoint(smoothed, timestamp))

        if len(self._history) < 3:
            return None

        if not self._detect_pole(timestamp):
            return None

        self._update_statistics()
        features = self._calculate_features()
        predicted_price = self._denormalize(self.weights.predict(features))
        self._update_ema(smoothed)

        if len(self._history) >= 4:
            self._learn_from_previous()

        confidence = self._calculate_confidence(features, predicted_price, smoothed)
        direction = self._direction(features, predicted_price, smoothed)
        signal = self._signal(direction, confidence, features)

        prediction = Prediction(
            predicted_price=predicted_price,
            confidence=confidence,
            direction=direction,
            signal=signal,
            features=PredictionFeatures(
                momentum=features.momentum,
                volatility=features.volatility,
                trend=features.trend,
            ),
            price=smoothed,
            timestamp=timestamp,
        )
        self._last_prediction = prediction

        logger.debug("Pole prediction", extra={"pole": self._poles[-1].type.value, **prediction.to_dict()})
        return prediction

    def reset(self) -> None:
        """Clear episodic state for a new market window. Weights are kept."""
        self._history.clear()
        self._poles.clear()
        self._smoothed = None
        self._last_raw = None
        self._stable_count = 0
        self._ema_short = 0.5
        self._ema_long = 0.5
        self._last_prediction = None

    def accuracy_stats(self) -> AccuracyStats:
        """Directional accuracy of the online learner so far."""
        accuracy = (
            self._correct_predictions / self._prediction_count
            if self._prediction_count > 0 else 0.0
        )
        return AccuracyStats(
            accuracy=accuracy,
            total_predictions=self._prediction_count,
            correct_predictions=self._correct_predictions,
        )

    def _in_band(self, price: float) -> bool:
        return self.MIN_PRICE <= price <= self.MAX_PRICE

    # ------------------------------------------------------------------
    # Pole detection
    # ------------------------------------------------------------------

    def _detect_pole(self, timestamp: float) -> bool:
        """Record and report a new pole at the latest history point."""
        values = [p.value for p in self._history]
        center = len(values) - 1
        current = values[center]

        lookback = min(self.POLE_LOOKBACK, center)
        prior = values[center - lookback:center]
        is_peak = all(v < current for v in prior)
        is_trough = all(v > current for v in prior)

        if not (is_peak or is_trough):
            return False

        pole_type = PoleType.PEAK if is_peak else PoleType.TROUGH
        last = self.last_pole
        if last is not None:
            moved = abs(current - last.value) >= self.NOISE_THRESHOLD
            if not moved and pole_type == last.type:
                return False

        self._poles.append(Pole(current, pole_type, timestamp))
        return True

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def _update_statistics(self) -> None:
        values = np.array([p.value for p in self._history])
        self._price_mean = float(np.mean(values))
        self._price_std = float(np.std(values))
        if self._price_std < 0.001:
            self._price_std = 0.1

    def _calculate_features(self) -> FeatureVector:
        values = [p.value for p in self._history]
        n = len(values)
        current = values[-1]
        lag1 = values[-2] if n >= 2 else current
        lag2 = values[-3] if n >= 3 else lag1
        lag3 = values[-4] if n >= 4 else lag2

        change = current - lag1
        momentum = change / lag1 if lag1 > 0 else 0.0

        longer_change = current - lag2
        if n >= 4 and ((change > 0 and longer_change > 0) or (change < 0 and longer_change < 0)):
            # Short and medium term agree: average the two rates
            momentum = (momentum + longer_change / (lag2 + 0.0001)) / 2

        ema_trend = self._ema_short - self._ema_long
        momentum_trend = momentum * 0.5
        change_trend = (current - lag2) / (lag2 + 0.0001) * 0.3 if n >= 3 else 0.0
        trend = ema_trend * 0.4 + momentum_trend * 0.4 + change_trend * 0.2

        return FeatureVector(
            price_lag1=self._normalize(lag1),
            price_lag2=self._normalize(lag2),
            price_lag3=self._normalize(lag3),
            momentum=_clip(momentum, -1.0, 1.0),
            volatility=min(1.0, self._volatility() * 5),
            trend=_clip(trend * 10, -1.0, 1.0),
        )

    def _volatility(self) -> float:
        """Population standard deviation of the last 5 points."""
        if len(self._history) < 3:
            return 0.0
        recent = np.array([p.value for p in self._history][-5:])
        return float(np.std(recent))

    def _normalize(self, price: float) -> float:
        z = (price - self._price_mean) / self._price_std
        return _clip((z + 3) / 6, 0.0, 1.0)

    def _denormalize(self, normalized: float) -> float:
        return (normalized * 6 - 3) * self._price_std + self._price_mean

    def _update_ema(self, price: float) -> None:
        if self._ema_short == 0.5 and self._ema_long == 0.5:
            self._ema_short = price
            self._ema_long = price
        else:
            self._ema_short = self.ALPHA_SHORT * price + (1 - self.ALPHA_SHORT) * self._ema_short
            self._ema_long = self.ALPHA_LONG * price + (1 - self.ALPHA_LONG) * self._ema_long

    # ------------------------------------------------------------------
    # Online learning
    # ------------------------------------------------------------------

    def _learn_from_previous(self) -> None:
        """
        Score the previous step retrospectively and take one gradient step.

        The previous feature vector is rebuilt from history; volatility and
        trend use fixed placeholders.
        """
        values = [p.value for p in self._history]
        n = len(values)
        actual = values[-1]
        previous = values[-2]
        before = values[-3] if n >= 3 else previous

        prev_features = FeatureVector(
            price_lag1=self._normalize(values[-3]) if n >= 3 else 0.5,
            price_lag2=self._normalize(values[-4]) if n >= 4 else 0.5,
            price_lag3=self._normalize(values[-5]) if n >= 5 else 0.5,
            momentum=_clip((previous - before) / (previous + 0.0001), -1.0, 1.0),
            volatility=0.1,
            trend=0.0,
        )

        predicted = self._denormalize(self.weights.predict(prev_features))
        error = actual - predicted
        normalized_error = min(1.0, abs(error) * 10)

        predicted_dir = _sign(predicted - previous)
        actual_dir = _sign(actual - previous)
        was_wrong = predicted_dir != actual_dir and predicted_dir != 0 and actual_dir != 0
        direction_correct = predicted_dir == actual_dir and predicted_dir != 0

        multiplier = 8.0 if was_wrong else 2.5
        learning_rate = _clip(
            self.LEARNING_RATE * (1 + normalized_error * multiplier),
            self.MIN_LEARNING_RATE,
            self.MAX_LEARNING_RATE,
        )
        decay = 0.85 if was_wrong else 0.97
        self.weights.apply_gradient(prev_features, error, learning_rate, decay)

        self._prediction_count += 1
        if direction_correct:
            self._correct_predictions += 1

        last_confidence = self._last_prediction.confidence if self._last_prediction else 0.5
        self._recent.append(AccuracyRecord(correct=direction_correct, confidence=last_confidence))

    def _recent_accuracy(self, min_samples: int = 1) -> float:
        if len(self._recent) < max(1, min_samples):
            return 0.6
        return sum(1 for r in self._recent if r.correct) / len(self._recent)

    # ------------------------------------------------------------------
    # Confidence, direction, signal
    # ------------------------------------------------------------------

    def _calculate_confidence(
        self,
        features: FeatureVector,
        predicted_price: float,
        current_price: float
    ) -> float:
        vol = features.volatility
        trend = features.trend
        momentum = features.momentum

        vol_penalty = 0.25 if vol > 0.08 else (0.10 if vol > 0.06 else 0.0)
        vol_factor = max(0.20, 1 - vol * 12 - vol_penalty)
        trend_factor = min(1.0, abs(trend) * 10)
        momentum_factor = min(1.0, abs(momentum) * 4)

        pred_diff = abs(predicted_price - current_price)
        magnitude_factor = min(1.0, pred_diff * 20) if pred_diff >= self.NOISE_THRESHOLD else 0.0

        momentum_alignment = 1.0 if (
            (momentum > 0 and predicted_price > current_price)
            or (momentum < 0 and predicted_price < current_price)
        ) else 0.7

        overall_accuracy = (
            self._correct_predictions / self._prediction_count
            if self._prediction_count > 10 else 0.6
        )
        accuracy_rate = self._recent_accuracy() * 0.6 + overall_accuracy * 0.4

        confidence = (
            vol_factor * 0.18
            + trend_factor * 0.45
            + momentum_factor * 0.28
            + magnitude_factor * 0.12
            + accuracy_rate * 0.30
            + momentum_alignment * 0.12
        )

        # Overconfidence: high-confidence calls have been missing
        if len(self._recent) >= 10:
            high = [r for r in self._recent if r.confidence >= 0.80]
            if len(high) >= 5:
                high_accuracy = sum(1 for r in high if r.correct) / len(high)
                if high_accuracy < 0.65:
                    confidence *= max(0.70, 0.85 - (0.65 - high_accuracy) * 0.5)

        stability = 1.0
        if self._stable_count > self.MAX_STABLE_COUNT:
            stability = max(0.5, 1.0 - (self._stable_count - self.MAX_STABLE_COUNT) * 0.1)
        elif self._stable_count > 0:
            stability = 0.9
        confidence *= max(0.85, stability)

        strong_trend = abs(trend) > 0.015
        strong_momentum = abs(momentum) > 0.005
        aligned = (trend > 0 and momentum > 0) or (trend < 0 and momentum < 0)

        if strong_trend and strong_momentum and aligned and accuracy_rate >= 0.55:
            strength = min(1.0, (abs(trend) + abs(momentum)) * 6.0)
            confidence = min(0.95, confidence * (1 + strength * 0.40))
        elif (strong_trend or strong_momentum) and accuracy_rate >= 0.55:
            confidence = min(0.90, confidence * 1.15)

        if vol > 0.09:
            confidence *= 0.80
        elif vol > 0.08:
            confidence *= 0.88
        elif vol > 0.06:
            confidence *= 0.95

        if pred_diff >= 0.02 and aligned and accuracy_rate >= 0.55:
            confidence = min(0.95, confidence * 1.20)
        if pred_diff >= 0.10 and aligned and accuracy_rate >= 0.60:
            confidence = min(0.95, confidence * 1.10)

        # Never state more confidence than the recent record supports
        if len(self._recent) >= 10:
            recent_accuracy = self._recent_accuracy()
            confidence = min(min(0.92, 0.60 + recent_accuracy * 0.32), confidence)
            if recent_accuracy < 0.55:
                confidence = min(0.75, confidence)
            elif recent_accuracy < 0.60:
                confidence = min(0.80, confidence)
            elif recent_accuracy < 0.65:
                confidence = min(0.85, confidence)
        else:
            confidence = min(0.85, confidence)

        confidence = min(self.CONFIDENCE_CEILING, confidence)

        if (trend > 0 and momentum < -0.03) or (trend < 0 and momentum > 0.03):
            confidence = max(0.35, confidence * 0.70)

        if self._stable_count > self.MAX_STABLE_COUNT * 2:
            confidence = max(0.35, confidence * 0.65)

        return max(self.CONFIDENCE_FLOOR, min(1.0, confidence))

    def _direction(
        self,
        features: FeatureVector,
        predicted_price: float,
        current_price: float
    ) -> Direction:
        """Resolve direction. Always UP or DOWN."""
        diff = predicted_price - current_price
        threshold = self.NOISE_THRESHOLD
        if self._stable_count > self.MAX_STABLE_COUNT:
            threshold *= 2

        trend = features.trend
        momentum = features.momentum

        if abs(diff) >= threshold:
            predicted = Direction.UP if diff > 0 else Direction.DOWN
            if predicted == Direction.UP:
                agrees = momentum > -0.01 or trend > -0.01
            else:
                agrees = momentum < 0.01 or trend < 0.01
            if agrees:
                return predicted
            if trend > 0.001 or momentum > 0.001:
                return Direction.UP
            if trend < -0.001 or momentum < -0.001:
                return Direction.DOWN
            return predicted

        if trend > 0.001:
            return Direction.UP
        if trend < -0.001:
            return Direction.DOWN
        if momentum > 0.001:
            return Direction.UP
        if momentum < -0.001:
            return Direction.DOWN

        last = self.last_pole
        if last is not None and last.type == PoleType.PEAK:
            return Direction.DOWN
        return Direction.UP

    def _signal(
        self,
        direction: Direction,
        confidence: float,
        features: FeatureVector
    ) -> Signal:
        """Walk the confidence ladder; HOLD if no tier's conditions hold."""
        trend = features.trend
        momentum = features.momentum
        vol = features.volatility
        up = direction == Direction.UP
        signal = Signal.BUY_UP if up else Signal.BUY_DOWN

        # Signed views so each tier reads the same for both directions
        t = trend if up else -trend
        m = momentum if up else -momentum

        recent_accuracy = self._recent_accuracy(min_samples=10)
        if recent_accuracy < 0.50:
            min_confidence = 0.65
        elif recent_accuracy < 0.55:
            min_confidence = 0.60
        else:
            min_confidence = 0.55

        if confidence >= 0.75:
            if abs(trend) > 0.012 and t > 0.012 and m > -0.03 and vol < 0.10:
                return signal

        if confidence >= 0.68:
            if abs(trend) > 0.015 and t > 0.015 and m > -0.04 and vol < 0.10:
                return signal

        if confidence >= 0.62:
            if abs(trend) > 0.018 and t > 0.018 and m > -0.04 and vol < 0.11:
                return signal

        if confidence >= min_confidence:
            strong_trend = abs(trend) > 0.12
            good_momentum = abs(momentum) > 0.02
            aligned = t > 0.08 and m > -0.05
            acceptable_vol = vol < 0.12
            if (strong_trend and aligned and acceptable_vol) or (
                good_momentum and aligned and acceptable_vol and confidence >= 0.55
            ):
                return signal

        if confidence >= 0.50 and recent_accuracy >= 0.50:
            if abs(trend) > 0.15 and t > 0.12 and m > -0.05 and vol < 0.11:
                return signal

        return Signal.HOLD


def _clip(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0
