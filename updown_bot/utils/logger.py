"""
Structured logging for the Up/Down trading bot.
Supports JSON logging for log aggregation pipelines.
"""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['timestamp'] = self.formatTime(record, self.datefmt)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    logger_name: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Whether to emit one JSON object per line
        logger_name: Optional specific logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name or "updown_bot")
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger with the given name."""
    return logging.getLogger(f"updown_bot.{name}")


class TradeLogger:
    """Specialized logger for prediction and trade events."""

    def __init__(self):
        self.logger = get_logger("trades")

    def prediction_made(
        self,
        market: str,
        window_id: str,
        price: float,
        predicted_price: float,
        confidence: float,
        direction: str,
        signal: str
    ):
        """Log a prediction emitted at a pole."""
        self.logger.info(
            "Prediction made",
            extra={
                "event": "prediction_made",
                "market": market,
                "window_id": window_id,
                "price": price,
                "predicted_price": predicted_price,
                "confidence": confidence,
                "direction": direction,
                "signal": signal
            }
        )

    def prediction_scored(
        self,
        window_id: str,
        predicted: str,
        actual: str,
        correct: bool
    ):
        """Log the outcome of the previous prediction."""
        self.logger.info(
            "Prediction scored",
            extra={
                "event": "prediction_scored",
                "window_id": window_id,
                "predicted": predicted,
                "actual": actual,
                "correct": correct
            }
        )

    def trade_decided(
        self,
        window_id: str,
        side: str,
        primary_price: float,
        hedge_price: Optional[float],
        size: float,
        up_count: int,
        down_count: int
    ):
        """Log an accepted trade decision."""
        self.logger.info(
            "Trade decided",
            extra={
                "event": "trade_decided",
                "window_id": window_id,
                "side": side,
                "primary_price": primary_price,
                "hedge_price": hedge_price,
                "size": size,
                "up_count": up_count,
                "down_count": down_count
            }
        )

    def trade_rejected(self, window_id: str, reason: str, **details):
        """Log why a prediction did not lead to a trade."""
        self.logger.info(
            "Trade rejected",
            extra={
                "event": "trade_rejected",
                "window_id": window_id,
                "reason": reason,
                **details
            }
        )

    def order_placed(
        self,
        window_id: str,
        order_id: str,
        token_id: str,
        leg: str,
        size: float,
        price: float
    ):
        """Log when an order is placed."""
        self.logger.info(
            "Order placed",
            extra={
                "event": "order_placed",
                "window_id": window_id,
                "order_id": order_id,
                "token_id": token_id,
                "leg": leg,
                "size": size,
                "price": price
            }
        )

    def order_failed(
        self,
        window_id: str,
        token_id: str,
        leg: str,
        error: Optional[str] = None
    ):
        """Log when an order could not be submitted."""
        self.logger.error(
            "Order failed",
            extra={
                "event": "order_failed",
                "window_id": window_id,
                "token_id": token_id,
                "leg": leg,
                "error": error
            }
        )

    def order_filled(
        self,
        order_id: str,
        token_id: str,
        fill_size: float,
        status: str
    ):
        """Log newly matched size on an order."""
        self.logger.info(
            "Order filled",
            extra={
                "event": "order_filled",
                "order_id": order_id,
                "token_id": token_id,
                "fill_size": fill_size,
                "status": status
            }
        )

    def hedge_skipped(self, window_id: str, hedge_price: float, primary_price: float):
        """Log a hedge rejected for an out-of-range limit price."""
        self.logger.warning(
            "Hedge skipped, primary left unhedged",
            extra={
                "event": "hedge_skipped",
                "window_id": window_id,
                "hedge_price": hedge_price,
                "primary_price": primary_price
            }
        )

    def window_paused(self, window_id: str, up_count: int, down_count: int):
        """Log when both side caps are reached."""
        self.logger.info(
            "Window paused",
            extra={
                "event": "window_paused",
                "window_id": window_id,
                "up_count": up_count,
                "down_count": down_count
            }
        )

    def window_transition(self, market: str, old_window_id: Optional[str], new_window_id: str):
        """Log a successful move to a new market window."""
        self.logger.info(
            "Window transition",
            extra={
                "event": "window_transition",
                "market": market,
                "old_window_id": old_window_id,
                "new_window_id": new_window_id
            }
        )

    def window_summary(self, summary: dict):
        """Log the final per-window summary."""
        self.logger.info(
            "Window summary",
            extra={"event": "window_summary", **summary}
        )
