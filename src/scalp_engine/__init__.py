"""Scalp Engine - 加密货币合约短线剥头皮下单生命周期引擎。"""

__version__ = "0.1.0"
