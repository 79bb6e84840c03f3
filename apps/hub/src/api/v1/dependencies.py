from __future__ import annotations

from fastapi import HTTPException, Request, status

from services.system import IrrigationSystem


def get_system(request: Request) -> IrrigationSystem:
    system = getattr(request.app.state, "irrigation", None)
    if system is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Irrigation system is not running")
    return system
