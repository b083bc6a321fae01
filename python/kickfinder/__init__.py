"""Sneaker price comparison across StockX, GOAT, Flight Club, Stadium Goods and KicksCrew."""

__version__ = "0.1.0"
