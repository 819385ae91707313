import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from investradar.analysis.producer import AnalysisStreamProducer
from investradar.app.errors import InvestRadarError, UpstreamError, ValidationError
from investradar.app.logging import configure_logging
from investradar.app.schemas import AnalyzeRequest, ErrorResponse, StockResponse
from investradar.app.settings import Settings, get_settings
from investradar.quotes.tools import QuoteAggregator

configure_logging(get_settings().log_level)

app = FastAPI(title="InvestRadar")
logger = logging.getLogger(__name__)

STREAM_MEDIA_TYPE = "application/json; charset=utf-8"
STREAM_HEADERS = {"X-Content-Type-Options": "nosniff"}
ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 404, 429, 500)}


@app.exception_handler(InvestRadarError)
async def handle_investradar_error(request: Request, exc: InvestRadarError):
    if isinstance(exc, UpstreamError) and exc.detail:
        logger.error("%s %s failed upstream: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=exc.message).model_dump())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content=ErrorResponse(error="The request body is not valid.").model_dump())


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content=ErrorResponse(error="An unexpected error occurred.").model_dump())


def get_analysis_producer(settings: Settings = Depends(get_settings)) -> AnalysisStreamProducer:
    return AnalysisStreamProducer.from_settings(settings)


def get_quote_aggregator(settings: Settings = Depends(get_settings)) -> QuoteAggregator:
    return QuoteAggregator.from_settings(settings)


@app.post("/api/analyze", responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}})
async def analyze(
    payload: AnalyzeRequest,
    producer: AnalysisStreamProducer = Depends(get_analysis_producer),
):
    stock_name = (payload.stock_name or "").strip()
    user_query = (payload.user_query or "").strip()
    if not stock_name or not user_query:
        raise ValidationError("Missing stockName or userQuery in request body.")

    frames = await producer.open(stock_name, user_query)
    return StreamingResponse(frames, media_type=STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)


@app.get("/api/stock", response_model=StockResponse, responses=ERROR_RESPONSES)
async def stock(
    ticker: Optional[str] = None,
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    ticker = (ticker or "").strip()
    if not ticker:
        raise ValidationError("Ticker symbol is required.")
    return await aggregator.lookup(ticker)


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
