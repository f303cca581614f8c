from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    broker_host: str = Field(..., validation_alias="BROKER_HOST")
    broker_port: int = Field(..., validation_alias="BROKER_PORT")
    broker_user: str = Field(..., validation_alias="BROKER_USER")
    broker_password: str = Field(..., validation_alias="BROKER_PASSWORD")

    queue_name: str = Field(..., validation_alias="QUEUE_NAME")
    # Suffix appended to queue_name for the dead-letter queue (rabbitmq backend).
    dead_letter_suffix: str = Field(".deadletter", validation_alias="DEAD_LETTER_SUFFIX")

    # "peek_lock" or "receive_and_delete".
    receive_mode: str = Field("peek_lock", validation_alias="RECEIVE_MODE")
    broker_backend: str = Field("rabbitmq", validation_alias="BROKER_BACKEND")

    prefetch_count: int = Field(10, validation_alias="PREFETCH_COUNT")
    # Longest wait for the first message of a batch. On rabbitmq an empty queue is
    # re-polled with basic.get until it elapses.
    poll_timeout_ms: int = Field(1, validation_alias="POLL_TIMEOUT_MS")
    # Bound on a single basic.get round-trip (rabbitmq), independent of poll_timeout_ms.
    rpc_timeout_seconds: float = Field(5.0, validation_alias="RPC_TIMEOUT_SECONDS")

    initial_backoff_seconds: float = Field(1.0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(5, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")
