from langgraph.graph import END, StateGraph

from lms_assistant.agents.composer import make_compose_node
from lms_assistant.agents.dispatcher import ActionDispatcher, make_dispatch_node
from lms_assistant.agents.guardrail import PermissionGate, make_guardrail_node, route_after_guardrail
from lms_assistant.agents.router import IntentClassifier, make_router_node
from lms_assistant.state import ChatState


def build_graph(
    classifier: IntentClassifier,
    gate: PermissionGate,
    dispatcher: ActionDispatcher,
    confidence_threshold: float,
) -> StateGraph:
    graph = StateGraph(ChatState)
    graph.add_node("router", make_router_node(classifier, confidence_threshold))
    graph.add_node("guardrail", make_guardrail_node(gate))
    graph.add_node("dispatch", make_dispatch_node(dispatcher))
    graph.add_node("compose", make_compose_node())

    graph.set_entry_point("router")
    graph.add_edge("router", "guardrail")
    graph.add_conditional_edges(
        "guardrail",
        route_after_guardrail,
        {"dispatch": "dispatch", "denied": END},
    )
    graph.add_edge("dispatch", "compose")
    graph.add_edge("compose", END)

    return graph
