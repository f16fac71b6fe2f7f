"""
Question Decoder API — Main Application
FastAPI application that turns one exam problem into scaffolded MCQ steps
plus a solution summary using Azure OpenAI.
"""

from dotenv import load_dotenv
load_dotenv()

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from routers import decode


app = FastAPI(
    title="Question Decoder API",
    description="Budget-constrained scaffolding of exam problems into step-by-step MCQs",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid JSON body", "details": jsonable_encoder(exc.errors())},
    )


app.include_router(decode.router)


@app.get("/health")
async def health_check():
    """Basic health check - API is running"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "question-decoder",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
