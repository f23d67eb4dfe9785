from .analyzer import AccountAnalyzer, AnalysisOutcome
from .insights import InsightsGenerator
from .pnl_engine import PnlEngine

__all__ = ["AccountAnalyzer", "AnalysisOutcome", "InsightsGenerator", "PnlEngine"]
