"""Configuration constants for the completion-driven HTTP responder."""

HOST: str = "127.0.0.1"
PORT: int = 7878
BACKLOG: int = 16
RESOURCE_PATH: str = "hello.html"
RECV_BUFFER_SIZE: int = 4096
RECEIVE_HISTORY_LIMIT: int = 16
IDLE_TIMEOUT_SECS: float | None = None
IDLE_SWEEP_INTERVAL_SECS: float = 1.0
FAILURE_POLICY: str = "isolate"
LOG_FORMAT: str = "plain"
ACCEPT_RETRY_DELAY_SECS: float = 0.1
