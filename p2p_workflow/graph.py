"""
LangGraph routing for workflow dispatch.
An admission node checks the request, then a conditional edge hands the
state to exactly one stage node.
"""

from typing import Any, Awaitable, Callable, Dict

from langgraph.graph import StateGraph, END
from pydantic import BaseModel

from p2p_workflow.errors import P2PError
from p2p_workflow.state import DispatchState
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)

StageCall = Callable[[DispatchState], Awaitable[BaseModel]]


def make_stage_node(action: str, call: StageCall) -> Callable[[DispatchState], Awaitable[Dict[str, Any]]]:
    """Wrap a stage call so its exceptions become state instead of escaping the graph."""

    async def stage_node(state: DispatchState) -> Dict[str, Any]:
        try:
            result = await call(state)
        except P2PError as e:
            logger.warning(f"{action} failed for {state.transaction_id or state.organization_id}: {e.message}")
            state.add_audit(action, f"{e.error_type}: {e.message}")
            return {
                "success": False,
                "status_code": e.status_code,
                "error": e.message,
                "error_type": e.error_type,
                "audit_log": state.audit_log,
            }
        except Exception as e:
            logger.exception(f"Unexpected error in {action}: {e}")
            state.add_audit(action, f"internal_error: {e}")
            return {
                "success": False,
                "status_code": 500,
                "error": str(e) or type(e).__name__,
                "error_type": "internal_error",
                "audit_log": state.audit_log,
            }

        data = result.model_dump(mode="json")
        success = data.get("success", True) if action == "process_payment" else True
        state.add_audit(action, "completed" if success else f"completed with status {data.get('status')}")
        return {
            "success": success,
            "status_code": 200,
            "result": data,
            "audit_log": state.audit_log,
        }

    stage_node.__name__ = f"{action}_node"
    return stage_node


def build_dispatch_graph(handlers: Dict[str, StageCall]):
    """
    Build the dispatch graph.

    Flow:
    1. admit_request - reject actions without a handler
    2. <action> - run the stage handler
    """

    async def admit_request(state: DispatchState) -> Dict[str, Any]:
        if state.action not in handlers:
            state.add_audit("admit_request", f"no handler for action '{state.action}'")
            return {
                "success": False,
                "status_code": 400,
                "error": f"unsupported action '{state.action}'",
                "error_type": "validation_error",
                "audit_log": state.audit_log,
            }
        state.add_audit("admit_request", f"routing {state.action} for {state.organization_id}")
        return {"audit_log": state.audit_log}

    def route_by_action(state: DispatchState) -> str:
        if state.error or state.action not in handlers:
            return "end"
        return state.action

    graph = StateGraph(DispatchState)

    graph.add_node("admit_request", admit_request)
    for action, call in handlers.items():
        graph.add_node(action, make_stage_node(action, call))
        graph.add_edge(action, END)

    graph.set_entry_point("admit_request")

    routes = {action: action for action in handlers}
    routes["end"] = END
    graph.add_conditional_edges("admit_request", route_by_action, routes)

    return graph.compile()
