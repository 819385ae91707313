from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    stock_name: Optional[str] = Field(default=None, alias="stockName")
    user_query: Optional[str] = Field(default=None, alias="userQuery")


class SourceRef(BaseModel):
    uri: str
    title: str


class TextEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str


class SourcesEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sources: List[SourceRef]


class ErrorEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str


# Exactly one variant per frame; extra="forbid" rejects frames mixing keys.
AnalysisEvent = Union[TextEvent, SourcesEvent, ErrorEvent]
analysis_event_adapter = TypeAdapter(AnalysisEvent)


class Stock(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticker: str
    name: str
    price: float
    change: float
    change_percent: float = Field(alias="changePercent")
    market_cap: int = Field(alias="marketCap")
    volume: int
    currency: str


class PriceDataPoint(BaseModel):
    date: str
    price: float


class StockResponse(BaseModel):
    stock: Stock
    history: List[PriceDataPoint]


class ErrorResponse(BaseModel):
    error: str
