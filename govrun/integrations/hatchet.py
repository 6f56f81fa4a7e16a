"""
Hatchet integration: durable cron triggers and the scheduled-run worker.

All Hatchet SDK usage is isolated in this module. The govrun API is
HatchetConfig, HatchetClient and the task() decorator.
"""

import logging
import os
import re
import signal
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

logger = logging.getLogger(__name__)

CRON_PAGE_SIZE = 100


# Lazy import to avoid loading hatchet_sdk when not using Hatchet
def _get_hatchet():
    from hatchet_sdk import Hatchet
    from hatchet_sdk.config import ClientConfig, ClientTLSConfig

    return Hatchet, ClientConfig, ClientTLSConfig


def _substitute_env(value: str) -> str:
    """Replace ${VAR} and $VAR with environment variable values."""
    if not isinstance(value, str):
        return value
    pattern = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

    def repl(match):
        name = match.group(1) or match.group(2)
        return os.environ.get(name, "")

    return pattern.sub(repl, value)


def _substitute_env_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively substitute ${VAR} in string values."""
    out: dict[str, Any] = {}
    for k, v in data.items():
        if isinstance(v, dict):
            out[k] = _substitute_env_dict(v)
        elif isinstance(v, str):
            out[k] = _substitute_env(v)
        else:
            out[k] = v
    return out


class HatchetConfig(BaseModel):
    """Hatchet connection and worker configuration.

    This is the ``hatchet`` section of govrun.yaml. String values may use
    ${VAR} references; connection fields left unset fall back to the
    HATCHET_* environment variables.
    """

    server_url: str = "http://localhost:7077"
    api_token: str | None = None
    grpc_host_port: str | None = None
    grpc_tls_strategy: str = "tls"
    namespace: str = "govrun"
    workflow_name: str = "governance_scheduled_run"
    max_concurrent_tasks: int = 10
    worker_name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def server_url_from_env(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = _substitute_env_dict(data)
            updates: dict[str, Any] = {}
            for field_name, env_name in (
                ("server_url", "HATCHET_SERVER_URL"),
                ("grpc_tls_strategy", "HATCHET_GRPC_TLS_STRATEGY"),
                ("grpc_host_port", "HATCHET_GRPC_HOST_PORT"),
            ):
                if field_name in data:
                    continue
                value = os.environ.get(env_name, "").strip()
                if value:
                    updates[field_name] = value
            if updates:
                data = {**data, **updates}
        return data

    @field_validator("server_url")
    @classmethod
    def server_url_format(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("server_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("grpc_tls_strategy")
    @classmethod
    def grpc_tls_strategy_not_empty(cls, v: str) -> str:
        value = v.strip().lower()
        if not value:
            raise ValueError("grpc_tls_strategy cannot be empty")
        return value

    @field_validator("max_concurrent_tasks")
    @classmethod
    def max_concurrent_tasks_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        return v


def _server_url_to_host_port(server_url: str) -> str:
    """Convert http://host:port to host:port."""
    if server_url.startswith("http://"):
        rest = server_url[7:]
    elif server_url.startswith("https://"):
        rest = server_url[8:]
    else:
        rest = server_url
    if "/" in rest:
        rest = rest.split("/", 1)[0]
    return rest if ":" in rest else f"{rest}:7077"


def _row_value(row: Any, name: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(name, default)
    return getattr(row, name, default)


def _cron_row_to_dict(row: Any) -> dict[str, Any]:
    meta = _row_value(row, "metadata")
    cron_id = _row_value(meta, "id") if meta is not None else None
    return {
        "id": str(cron_id or _row_value(row, "id", "")),
        "name": _row_value(row, "name") or "",
        "workflow_name": _row_value(row, "workflow_name") or "",
        "expression": _row_value(row, "cron") or "",
        "input": dict(_row_value(row, "input") or {}),
        "additional_metadata": dict(_row_value(row, "additional_metadata") or {}),
    }


class HatchetClient:
    """govrun wrapper around the Hatchet SDK.

    SDK failures on cron calls surface as :class:`ConnectionError` so the
    schedule store can treat them as transient.
    """

    def __init__(self, config: HatchetConfig) -> None:
        self.config = config
        self._hatchet: Any = None
        self._workflows: dict[str, Any] = {}

    @property
    def connected(self) -> bool:
        return self._hatchet is not None

    def connect(self) -> None:
        """Connect to Hatchet Server."""
        token = self.config.api_token or os.environ.get("HATCHET_API_TOKEN", "")
        if not token:
            raise ValueError(
                "Hatchet API token required: set api_token in config or HATCHET_API_TOKEN"
            )
        hatchet_cls, client_config_cls, client_tls_config_cls = _get_hatchet()
        try:
            grpc_host_port = self.config.grpc_host_port or _server_url_to_host_port(self.config.server_url)
            client_config = client_config_cls(
                host_port=grpc_host_port,
                server_url=self.config.server_url,
                token=token,
                namespace=self.config.namespace,
                tls_config=client_tls_config_cls(strategy=self.config.grpc_tls_strategy),
            )
            self._hatchet = hatchet_cls(config=client_config)
            logger.info("Connected to Hatchet at %s", self.config.server_url)
        except Exception as e:
            logger.exception("Failed to connect to Hatchet")
            raise ConnectionError(f"Failed to connect to Hatchet Server: {e}") from e

    def disconnect(self) -> None:
        """Disconnect from Hatchet Server."""
        if self._hatchet is not None:
            self._hatchet = None
            logger.info("Disconnected from Hatchet Server")

    def task(
        self,
        name: str | None = None,
        retries: int = 0,
        timeout: int | None = None,
        input_validator: type | None = None,
    ) -> Callable:
        """Decorator to register a function as a Hatchet task (standalone workflow).

        Cron triggers are attached at runtime through :meth:`create_cron`, so
        the task itself declares none.
        """

        def decorator(func: Callable) -> Callable:
            if self._hatchet is None:
                raise RuntimeError("Must call connect() before registering tasks")
            task_name = str(name or getattr(func, "__name__", "anonymous")).strip() or "anonymous"
            exec_timeout = timedelta(seconds=timeout) if timeout else timedelta(seconds=60)
            options: dict[str, Any] = {
                "name": task_name,
                "retries": retries,
                "execution_timeout": exec_timeout,
            }
            if input_validator is not None:
                options["input_validator"] = input_validator
            standalone = self._hatchet.task(**options)(func)
            self._workflows[task_name] = standalone
            return func

        return decorator

    def _require_connection(self) -> Any:
        if self._hatchet is None:
            raise RuntimeError("Not connected to Hatchet")
        return self._hatchet

    async def create_cron(
        self,
        workflow_name: str,
        cron_name: str,
        expression: str,
        input_data: dict[str, Any],
        *,
        additional_metadata: dict[str, str] | None = None,
    ) -> str:
        """Create a cron trigger for a workflow. Returns cron trigger id."""
        hatchet = self._require_connection()
        try:
            cron_result = await hatchet.cron.aio_create(
                workflow_name=workflow_name,
                cron_name=cron_name,
                expression=expression,
                input=input_data,
                additional_metadata=additional_metadata or {},
            )
        except Exception as e:
            raise ConnectionError(f"Failed to create cron trigger {cron_name}: {e}") from e
        meta = _row_value(cron_result, "metadata")
        cron_id = _row_value(meta, "id") if meta is not None else None
        return str(cron_id or _row_value(cron_result, "id", "") or cron_name)

    async def list_crons(self, workflow_name: str | None = None) -> list[dict[str, Any]]:
        """List cron triggers, optionally limited to one workflow."""
        hatchet = self._require_connection()
        out: list[dict[str, Any]] = []
        offset = 0
        while True:
            try:
                page = await hatchet.cron.aio_list(offset=offset, limit=CRON_PAGE_SIZE)
            except Exception as e:
                raise ConnectionError(f"Failed to list cron triggers: {e}") from e
            rows = page if isinstance(page, list) else (_row_value(page, "rows") or [])
            for row in rows:
                item = _cron_row_to_dict(row)
                if workflow_name and item["workflow_name"] and item["workflow_name"] != workflow_name:
                    continue
                out.append(item)
            if len(rows) < CRON_PAGE_SIZE:
                return out
            offset += CRON_PAGE_SIZE

    async def delete_cron(self, cron_id: str) -> None:
        """Delete a cron trigger by id."""
        hatchet = self._require_connection()
        try:
            await hatchet.cron.aio_delete(cron_id)
        except Exception as e:
            raise ConnectionError(f"Failed to delete cron trigger {cron_id}: {e}") from e

    def start_worker(self) -> None:
        """Start the Hatchet worker (blocking)."""
        if self._hatchet is None:
            raise RuntimeError("Must call connect() before start_worker()")
        if not hasattr(signal, "SIGQUIT"):
            # Hatchet SDK expects SIGQUIT on POSIX; map to SIGTERM for Windows.
            signal.SIGQUIT = signal.SIGTERM  # type: ignore[attr-defined,misc]
        worker_name = self.config.worker_name or f"govrun-worker-{os.getpid()}"
        workflows = list(self._workflows.values())
        if not workflows:
            raise RuntimeError("No tasks registered; register at least one with @client.task()")
        worker = self._hatchet.worker(
            name=worker_name,
            slots=self.config.max_concurrent_tasks,
            workflows=workflows,
        )
        worker.start()
