"""交易日志（教练会话产出的交易计划）。"""

from coach_core.journal.trade_journal import TradeJournal

__all__ = ["TradeJournal"]
