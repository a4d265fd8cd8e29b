from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from starlette.responses import Response

INBOUND_MESSAGES = Counter(
    "chatbridge_inbound_messages_total", "Inbound messages accepted by an adapter", ["channel"]
)
PAIRING_EVENTS = Counter(
    "chatbridge_pairing_events_total", "Pairing gate outcomes for unknown peers", ["channel", "outcome"]
)
PROMPTS = Counter("chatbridge_prompts_total", "Prompts sent to the agent", ["channel", "status"])
PERMISSION_REPLIES = Counter(
    "chatbridge_permission_replies_total", "Tool permission prompts answered by the bridge", ["reply"]
)


def metrics_response() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
