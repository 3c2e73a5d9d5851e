from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ..analytics import summarize_results
from ..errors import NotFound
from ..schemas import Principal
from ..services import Services, get_services
from ..store import results_path
from .auth import get_current_principal


router = APIRouter(prefix="/results", tags=["results"])


def _own_results(services: Services, uid: str) -> List[Dict[str, Any]]:
	stored = services.store.read(results_path(uid)) or {}
	results = [{"id": result_id, **(result or {})} for result_id, result in stored.items()]
	results.sort(key=lambda r: str(r.get("timestamp", "")), reverse=True)
	return results


@router.get("")
async def list_results(principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	"""The caller's results, newest first."""
	return _own_results(services, principal.uid)


@router.get("/analytics")
async def analytics(principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	return {"analytics": summarize_results(_own_results(services, principal.uid))}


@router.get("/{result_id}")
async def get_result(result_id: str, principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	result = services.store.read(f"{results_path(principal.uid)}/{result_id}")
	if not result:
		raise NotFound(f"Result {result_id} not found")
	return {"id": result_id, **result}
