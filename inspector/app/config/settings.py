from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    namespace: str = Field("", validation_alias="SERVICEBUS_NAMESPACE")
    connection_string: str = Field("", validation_alias="SERVICEBUS_CONNECTION_STRING")

    # auto | default | cli | environment | managed
    auth_mode: str = Field("auto", validation_alias="AUTH_MODE")
    tenant_id: str = Field("", validation_alias="AZURE_TENANT_ID")
    token_scope: str = Field("https://servicebus.azure.net/.default", validation_alias="TOKEN_SCOPE")
    # plain: SASL PLAIN with the key; cbs: SASL ANONYMOUS + SAS token over $cbs
    shared_key_auth: str = Field("plain", validation_alias="SHARED_KEY_AUTH")

    servicebus_backend: str = Field("azure", validation_alias="SERVICEBUS_BACKEND")
    amqp_backend: str = Field("proton", validation_alias="AMQP_BACKEND")
    amqp_port: int = Field(5671, validation_alias="AMQP_PORT")

    connect_deadline_seconds: float = Field(30.0, validation_alias="CONNECT_DEADLINE_SECONDS")
    connect_attempt_timeout_seconds: float = Field(2.0, validation_alias="CONNECT_ATTEMPT_TIMEOUT_SECONDS")
    connect_retry_pause_seconds: float = Field(0.5, validation_alias="CONNECT_RETRY_PAUSE_SECONDS")

    cbs_response_timeout_seconds: float = Field(5.0, validation_alias="CBS_RESPONSE_TIMEOUT_SECONDS")
    # Ordered, most specific first; the first type the broker accepts wins.
    cbs_token_types: str = Field("jwt,servicebus.windows.net:sastoken", validation_alias="CBS_TOKEN_TYPES")
    cbs_audience_scheme: str = Field("sb", validation_alias="CBS_AUDIENCE_SCHEME")
    sas_audience_scheme: str = Field("sb", validation_alias="SAS_AUDIENCE_SCHEME")
    token_lifetime_minutes: int = Field(60, validation_alias="TOKEN_LIFETIME_MINUTES")

    browse_poll_seconds: float = Field(1.0, validation_alias="BROWSE_POLL_SECONDS")
    browse_credit_multiplier: int = Field(10, validation_alias="BROWSE_CREDIT_MULTIPLIER")
    first_pass_credit_floor: int = Field(100, validation_alias="FIRST_PASS_CREDIT_FLOOR")
    first_pass_credit_ceiling: int = Field(1000, validation_alias="FIRST_PASS_CREDIT_CEILING")
    second_pass_credit_floor: int = Field(200, validation_alias="SECOND_PASS_CREDIT_FLOOR")
    second_pass_credit_ceiling: int = Field(2000, validation_alias="SECOND_PASS_CREDIT_CEILING")
    first_pass_window_floor_seconds: float = Field(8.0, validation_alias="FIRST_PASS_WINDOW_FLOOR_SECONDS")
    first_pass_window_ceiling_seconds: float = Field(20.0, validation_alias="FIRST_PASS_WINDOW_CEILING_SECONDS")
    second_pass_extension_seconds: float = Field(10.0, validation_alias="SECOND_PASS_EXTENSION_SECONDS")
    second_pass_extension_cap_seconds: float = Field(20.0, validation_alias="SECOND_PASS_EXTENSION_CAP_SECONDS")
    window_seconds_per_hint: float = Field(0.05, validation_alias="WINDOW_SECONDS_PER_HINT")

    lock_wait_seconds: float = Field(5.0, validation_alias="LOCK_WAIT_SECONDS")
    max_rederived_batch: int = Field(500, validation_alias="MAX_REDERIVED_BATCH")

    page_size: int = Field(20, validation_alias="PAGE_SIZE")
    max_filter_scan_batches: int = Field(10, validation_alias="MAX_FILTER_SCAN_BATCHES")

    @property
    def cbs_token_type_list(self) -> list[str]:
        return [t.strip() for t in self.cbs_token_types.split(",") if t.strip()]
