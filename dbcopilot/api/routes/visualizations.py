"""
Visualization Routes

Re-runs a read-only query for a chart, straight through the gateway.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from dbcopilot.api.dependencies import get_component, get_user_id
from dbcopilot.api.visualization import infer_visualization
from dbcopilot.models.api import VisualizationExecuteRequest, VisualizationExecuteResponse
from dbcopilot.models.execution import ExecutionTrigger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/visualizations/execute", response_model=VisualizationExecuteResponse)
async def execute_visualization(
    payload: VisualizationExecuteRequest,
    user_id: Annotated[str, Depends(get_user_id)],
) -> VisualizationExecuteResponse:
    """
    Execute a chart query against the chat's Connection.

    Only read-only statements are accepted (403 otherwise), whatever the
    chat's auto-execute setting.
    """
    repository = get_component("repository")
    pool = get_component("pool")
    gateway = get_component("gateway")

    chat = await repository.get_owned_chat(payload.chat_id, user_id)
    connection = await repository.get_connection(chat.connection_id)
    classification = gateway.classify(connection.engine, payload.query)

    async with pool.lease(connection.connection_id) as handle:
        result = await gateway.execute(
            handle,
            payload.query,
            classification,
            trigger=ExecutionTrigger.USER,
            read_only=True,
        )

    visualization_type, metadata = infer_visualization(result, payload.visualization_type)
    logger.info(
        f"Visualization query for chat {chat.chat_id}: {result.row_count} rows, "
        f"{visualization_type}",
        extra={"chat_id": chat.chat_id},
    )
    return VisualizationExecuteResponse(
        title=payload.title,
        query=payload.query,
        visualization_type=visualization_type,
        visualization_metadata=metadata,
        result=result,
    )
