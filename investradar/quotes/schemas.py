"""Alpha Vantage payload shapes, validated at the boundary."""
import datetime
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, FiniteFloat


def _strip_percent(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().rstrip("%")
    return value


Percent = Annotated[FiniteFloat, BeforeValidator(_strip_percent)]


class CompanyOverview(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str = Field(alias="Symbol")
    name: str = Field(alias="Name")
    market_capitalization: int = Field(alias="MarketCapitalization")
    currency: Optional[str] = Field(default=None, alias="Currency")


class GlobalQuote(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: FiniteFloat = Field(alias="05. price")
    volume: int = Field(alias="06. volume")
    change: FiniteFloat = Field(alias="09. change")
    change_percent: Percent = Field(alias="10. change percent")


class QuoteEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    global_quote: Optional[Dict[str, Any]] = Field(default=None, alias="Global Quote")


class DailyBar(BaseModel):
    model_config = ConfigDict(extra="ignore")

    close: FiniteFloat = Field(alias="4. close")


class DailySeries(BaseModel):
    model_config = ConfigDict(extra="ignore")

    daily: Optional[Dict[datetime.date, DailyBar]] = Field(default=None, alias="Time Series (Daily)")
