from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
	model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

	APP_NAME: str = Field(default="LegalHub Subscriptions API")
	DEBUG: bool = Field(default=False)
	API_PREFIX: str = Field(default="")
	LOG_LEVEL: str = Field(default="INFO")

	# Database
	DATABASE_URL: str = Field(default="")

	# Auth / JWT
	JWT_SECRET: str = Field(default="dev-change-me")
	JWT_ALGORITHM: str = Field(default="HS256")
	ACCESS_TOKEN_EXPIRES_MINUTES: int = Field(default=60)

	# Azure Monitor / Application Insights
	AZURE_MONITOR_CONN_STR: str = Field(default="")
	ENABLE_APP_INSIGHTS: bool = Field(default=True)
	SAMPLING_RATIO: float = Field(default=1.0)

	# Billing rules
	CURRENCY: str = Field(default="EUR")
	YEARLY_DISCOUNT_RATE: float = Field(default=0.10, ge=0, lt=1)
	DOWNGRADE_POLICY: Literal["reject", "defer"] = Field(default="reject")
	PRORATE_UPGRADES: bool = Field(default=True)
	PENDING_TIMEOUT_MINUTES: int = Field(default=60, ge=0)
	# A renewal arriving this long after end_date still extends the period
	RENEWAL_GRACE_MINUTES: int = Field(default=1440, ge=0, le=20160)
	OPTIMISTIC_RETRY_ATTEMPTS: int = Field(default=3, ge=1)

	# Payment gateway
	PAYMENT_GATEWAY: Literal["simulated", "http"] = Field(default="simulated")
	PAYMENT_GATEWAY_URL: str = Field(default="")
	PAYMENT_GATEWAY_API_KEY: str = Field(default="")
	PAYMENT_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
	PAYMENT_WEBHOOK_SECRET: str = Field(default="")


settings = Settings()
