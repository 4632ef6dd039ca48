from fastapi import Request

from taleturn.modules.turns.orchestrator import TurnPipelineDeps


def get_turn_pipeline(request: Request) -> TurnPipelineDeps:
    return request.app.state.turn_pipeline
