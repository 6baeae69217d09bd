"""
PrecastFlow API Dependencies

The automation engine is created once by the app lifespan and shared by
every request through app.state.
"""

from fastapi import HTTPException, Request, status

from automation.engine import AutomationEngine


def get_engine(request: Request) -> AutomationEngine:
    """Yield the process-wide automation engine."""
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Automation engine not ready")
    return engine
