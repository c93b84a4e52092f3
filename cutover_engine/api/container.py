#cutover_engine\api\container.py
from cutover_engine.container import get_orchestrator as _get_orchestrator
from cutover_engine.orchestrator.cutover_orchestrator import CutoverOrchestrator


def get_orchestrator() -> CutoverOrchestrator:
    return _get_orchestrator()
