from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from lms_assistant.utils import utcnow

router = APIRouter()

EXAMPLES = {
    "enrollment_queries": [
        "Is john@company.com enrolled in Python Programming?",
        "Who is enrolled in Leadership Training course?",
        "Enroll sarah@test.com in Excel course with high priority due 2024-12-31",
        "Enroll the sales team group in Customer Service training",
        "Remove mike@company.com from JavaScript course",
        "Update jane@company.com's enrollment in SQL course to high priority",
        "Show completion stats for all Python courses",
    ],
    "search_queries": [
        "Search for courses about data analysis",
        "Find learning plans for new employees",
        "Show upcoming Excel training sessions",
    ],
}


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/chat/capabilities")
async def capabilities(request: Request) -> dict:
    state = request.app.state
    return {
        "status": "healthy",
        "name": state.settings.app_name,
        "roles": state.permission_table.as_dict(),
        "confirmation_required": sorted(intent.value for intent in state.dispatcher.destructive_intents),
        "rate_limits": {
            tier: {"capacity": policy.capacity, "refill_per_second": policy.refill_per_second}
            for tier, policy in state.settings.rate_limits.items()
        },
        "examples": EXAMPLES,
        "timestamp": utcnow().isoformat(),
    }


@router.post("/chat")
async def chat(request: Request) -> JSONResponse:
    pipeline = request.app.state.pipeline
    raw_body = await request.body()
    result = await pipeline.handle(
        raw_body,
        request.headers,
        peer=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
    )
    return JSONResponse(content=result.body, status_code=result.status_code, headers=result.headers)
