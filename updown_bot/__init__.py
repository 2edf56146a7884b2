"""
Polymarket 15-minute Up/Down Trading Bot

Watches the best bid/ask of the Up and Down tokens of each configured
15-minute market, predicts the next move of the Up price at local
peaks/troughs and places a directional order plus an opposite-side hedge.

Key Modules:
- updown_bot.prediction: adaptive online price predictor
- updown_bot.markets: 15-minute market window tracking
- updown_bot.trading: trade decisions and per-window side caps
- updown_bot.execution: order placement and fill tracking
- updown_bot.scoring: per-window accuracy and cost summaries
- updown_bot.clients: Gamma, CLOB and websocket adapters
- updown_bot.bot: core engine
"""

__version__ = "0.1.0"
