import logging
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from deedfetch.config import get_settings
from deedfetch.errors import ConfigurationError, FailureRecord
from deedfetch.main import DeedFetchPool, DeedRetrievalGraph

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("deed-retrieval-api")

# Initialize FastAPI app
app = FastAPI(
    title="Deed Retrieval API",
    description="API for retrieving the most recent recorded deed for a property as a PDF",
    version="1.0.0",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models
class DeedRequest(BaseModel):
    address: str = Field(..., min_length=1)
    county: Optional[str] = None
    state: Optional[str] = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, address):
        if not address.strip():
            raise ValueError("Address must be a non-empty string")
        return address.strip()


class BatchDeedRequest(BaseModel):
    addresses: List[str] = Field(..., min_length=1, max_length=settings.max_addresses)
    county: Optional[str] = None
    state: Optional[str] = None

    @field_validator("addresses")
    @classmethod
    def validate_addresses(cls, addresses):
        if not all(addr.strip() for addr in addresses):
            raise ValueError("All addresses must be non-empty strings")
        return [addr.strip() for addr in addresses]


class DeedResponse(BaseModel):
    success: bool
    filename: Optional[str] = None
    pdfBase64: Optional[str] = None
    pageCount: Optional[int] = None
    sizeBytes: Optional[int] = None
    captchaEncountered: bool = False
    sourceUrl: Optional[str] = None
    durationMs: Optional[int] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    stage: Optional[str] = None
    retryable: Optional[bool] = None
    manualReview: Optional[bool] = None


class CountyInfo(BaseModel):
    name: str
    county: str
    state: str
    displayName: str
    features: List[str] = []


# Build the retrieval graph once at startup
try:
    graph = DeedRetrievalGraph(settings=settings)
    graph.compile()
except ConfigurationError as e:
    logger.error(f"Invalid configuration: {e}")
    raise

pool = DeedFetchPool(size=settings.pool_size, graph=graph)


def to_response(outcome) -> DeedResponse:
    if isinstance(outcome, FailureRecord):
        return DeedResponse(
            success=False,
            error=outcome.detail,
            kind=outcome.kind.value,
            stage=outcome.stage.value,
            retryable=outcome.retryable,
            manualReview=outcome.needs_manual_review,
        )
    return DeedResponse(success=True, **outcome.to_dict(include_pdf=True))


@app.post("/api/getPriorDeed", response_model=DeedResponse)
async def get_prior_deed(request: DeedRequest) -> DeedResponse:
    """Retrieve the most recent deed for an address."""
    hints = {"county": request.county, "state": request.state} if request.county else None
    logger.info(f"Processing address: {request.address}")
    outcome = await pool.fetch(request.address, hints)

    response = to_response(outcome)
    if response.success:
        logger.info(f"Completed processing address: {request.address}")
    else:
        logger.error(f"Error processing address {request.address}: {response.kind} ({response.error})")
    return response


@app.post("/api/getPriorDeeds", response_model=List[DeedResponse])
async def get_prior_deeds(request: BatchDeedRequest) -> List[DeedResponse]:
    """Retrieve deeds for several addresses, at most the pool size at a time."""
    hints = {"county": request.county, "state": request.state} if request.county else None
    outcomes = await pool.fetch_many(request.addresses, hints)
    return [to_response(outcome) for outcome in outcomes]


@app.get("/api/counties", response_model=List[CountyInfo])
async def list_counties() -> List[CountyInfo]:
    """List the jurisdictions this deployment can serve."""
    return [
        CountyInfo(
            name=config.name,
            county=config.county,
            state=config.state,
            displayName=config.display_name,
            features=list(config.features),
        )
        for config in graph.registry.configs()
    ]


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "jurisdictions": len(graph.registry.keys()),
        "poolSize": pool.size,
    }


if __name__ == "__main__":
    uvicorn.run("application:app", host="0.0.0.0", port=8000, reload=True)
