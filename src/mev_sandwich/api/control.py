"""Operator control endpoints."""
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Query, Request, status

from ..execution.sandwich_executor import SubmissionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/control")


def _coordinator(request: Request) -> Any:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Coordinator not initialized")
    return coordinator


@router.post("/speed-up/{tx_hash}")
async def speed_up(request: Request, tx_hash: str,
                   multiplier: float = Query(1.5, gt=1.0, le=5.0)) -> Dict[str, Any]:
    """Resubmit a pending sandwich with the same nonce at a higher gas price."""
    executor = getattr(request.app.state, "executor", None)
    if executor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Execution is disabled")
    
    try:
        result = await executor.speed_up_transaction(tx_hash, multiplier)
    except SubmissionError as e:
        logger.warning(f"Speed-up of {tx_hash} rejected: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"status": "submitted", **result}


@router.post("/pause")
def pause(request: Request) -> Dict[str, Any]:
    """Stop admitting new opportunities. In-flight ones still run to completion."""
    coordinator = _coordinator(request)
    coordinator.pause()
    return {"status": "paused"}


@router.post("/resume")
def resume(request: Request) -> Dict[str, Any]:
    coordinator = _coordinator(request)
    coordinator.resume()
    return {"status": "running"}


@router.get("/network")
async def network(request: Request) -> Dict[str, Any]:
    """Gas price and block the optimizer would price against right now."""
    coordinator = _coordinator(request)
    conditions = await coordinator.optimizer.network_conditions(coordinator.provider)
    return {"gas_price": conditions.gas_price, "block_number": conditions.block_number}
