"""
Indexer status and control endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Request, status

import structlog

from paygate.api.schemas.common import SuccessResponse, create_success_response
from paygate.api.schemas.indexers import (
    ChainOperationResultSchema,
    ChainStatusSchema,
    IndexerStatusData,
    ManagerSummary,
)
from paygate.core.exceptions import PaygateException, UnknownChainError
from paygate.indexer.manager import IndexerManager
from paygate.indexer.types import ChainOperationResult


logger = structlog.get_logger(__name__)

router = APIRouter()


def get_indexer_manager(request: Request) -> IndexerManager:
    """Manager injected into app state at startup."""
    manager = getattr(request.app.state, "indexer_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "INDEXER_UNAVAILABLE",
                "message": "Indexer manager is not initialized"
            }
        )
    return manager


def _results_payload(results: List[ChainOperationResult]) -> list:
    return [ChainOperationResultSchema.from_result(r).model_dump(mode="json") for r in results]


def _error_detail(error: PaygateException) -> dict:
    return {
        "error": error.code,
        "message": error.message,
        "details": error.details,
    }


@router.get(
    "/status",
    response_model=SuccessResponse,
    summary="Indexer Status",
    description="Per-chain watcher status and a fleet summary"
)
async def get_indexer_status(manager: IndexerManager = Depends(get_indexer_manager)):
    """Get status of every chain watcher."""
    data = IndexerStatusData(
        manager=ManagerSummary(**manager.get_manager_status()),
        chains=[ChainStatusSchema.from_status(s) for s in manager.get_status()],
    )
    return create_success_response(
        data=data.model_dump(mode="json"),
        message="Indexer status retrieved successfully"
    )


@router.post(
    "/start",
    response_model=SuccessResponse,
    summary="Start All Indexers"
)
async def start_all_indexers(manager: IndexerManager = Depends(get_indexer_manager)):
    """Start every configured chain watcher."""
    results = await manager.start_all()
    logger.info("Start all requested via API")
    return create_success_response(data=_results_payload(results), message="Start requested")


@router.post(
    "/stop",
    response_model=SuccessResponse,
    summary="Stop All Indexers"
)
async def stop_all_indexers(manager: IndexerManager = Depends(get_indexer_manager)):
    """Stop every chain watcher."""
    results = await manager.stop_all()
    logger.info("Stop all requested via API")
    return create_success_response(data=_results_payload(results), message="Stop requested")


@router.post(
    "/restart",
    response_model=SuccessResponse,
    summary="Restart All Indexers"
)
async def restart_all_indexers(manager: IndexerManager = Depends(get_indexer_manager)):
    """Stop, wait the restart delay, then start every chain watcher."""
    results = await manager.restart_all()
    logger.info("Restart all requested via API")
    return create_success_response(data=_results_payload(results), message="Restart requested")


@router.post(
    "/{chain_id}/start",
    response_model=SuccessResponse,
    summary="Start Chain Indexer"
)
async def start_chain_indexer(
    chain_id: int = Path(..., description="EVM chain id"),
    manager: IndexerManager = Depends(get_indexer_manager)
):
    """Start a single chain watcher."""
    try:
        await manager.start_indexer(chain_id)
    except UnknownChainError as e:
        logger.warning("Start requested for unknown chain", chain_id=chain_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_error_detail(e))
    except PaygateException as e:
        logger.error("Failed to start chain indexer", chain_id=chain_id, error=e.message)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_error_detail(e))

    return create_success_response(
        data=ChainStatusSchema.from_status(manager.watchers[chain_id].get_status()).model_dump(mode="json"),
        message=f"Indexer for chain {chain_id} started"
    )


@router.post(
    "/{chain_id}/stop",
    response_model=SuccessResponse,
    summary="Stop Chain Indexer"
)
async def stop_chain_indexer(
    chain_id: int = Path(..., description="EVM chain id"),
    manager: IndexerManager = Depends(get_indexer_manager)
):
    """Stop a single chain watcher."""
    try:
        await manager.stop_indexer(chain_id)
    except UnknownChainError as e:
        logger.warning("Stop requested for unknown chain", chain_id=chain_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_error_detail(e))
    except PaygateException as e:
        logger.error("Failed to stop chain indexer", chain_id=chain_id, error=e.message)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_error_detail(e))

    return create_success_response(
        data=ChainStatusSchema.from_status(manager.watchers[chain_id].get_status()).model_dump(mode="json"),
        message=f"Indexer for chain {chain_id} stopped"
    )
