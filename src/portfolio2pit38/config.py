from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core import OversellPolicy
from .fx import DEFAULT_USD_PLN_RATE, FailFast, FallbackConstant, FxFallbackPolicy
from .market_data import DEFAULT_FMP_BASE_URL

FX_SOURCES = ('nbp', 'fmp')


class Settings(BaseSettings):
    """Runtime configuration; credentials only ever come from the environment or CLI flags.

    ``fx_fallback_rate`` of None (``PORTFOLIO2PIT38_FX_FALLBACK_RATE=``) means a
    missing USD/PLN rate aborts the ingest.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        frozen=True,
    )

    fmp_api_key: Optional[str] = Field(default=None, validation_alias='FMP_API_KEY')
    fmp_base_url: str = Field(default=DEFAULT_FMP_BASE_URL, validation_alias='FMP_BASE_URL')
    store_path: str = Field(default='portfolio.json', validation_alias='PORTFOLIO2PIT38_STORE')
    fx_source: Literal['nbp', 'fmp'] = Field(default='nbp', validation_alias='PORTFOLIO2PIT38_FX_SOURCE')
    fx_fallback_rate: Optional[Decimal] = Field(
        default=DEFAULT_USD_PLN_RATE,
        validation_alias='PORTFOLIO2PIT38_FX_FALLBACK_RATE',
        description="USD/PLN rate used when no quote is found; None fails fast.",
    )
    oversell_policy: OversellPolicy = Field(default=OversellPolicy.REJECT, validation_alias='PORTFOLIO2PIT38_OVERSELL')
    http_timeout: float = Field(default=10.0, gt=0, validation_alias='PORTFOLIO2PIT38_HTTP_TIMEOUT')

    @field_validator('fmp_api_key', 'fx_fallback_rate', mode='before')
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator('fx_source', 'oversell_policy', mode='before')
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def fx_policy(self) -> FxFallbackPolicy:
        if self.fx_fallback_rate is None:
            return FailFast()
        return FallbackConstant(self.fx_fallback_rate)

    def dict_for_logging(self) -> dict:
        """Settings with the API key masked."""
        return {k: ('***' if k == 'fmp_api_key' and v else v) for k, v in self.model_dump().items()}
