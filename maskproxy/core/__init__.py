from maskproxy.core.analysis.service import AnalysisService
from maskproxy.core.masking.reversible import ReversibleMaskingEngine

__all__ = ["AnalysisService", "ReversibleMaskingEngine"]
