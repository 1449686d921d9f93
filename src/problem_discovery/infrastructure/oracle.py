"""Semantic assessment oracle: the single boundary to the language model.

Every judgement the engine delegates to an LLM (threshold confirmation,
re-scoring, similarity grouping, merging, feedback synthesis) goes through
``SemanticOracle``.  The oracle wraps a LangChain ``BaseChatModel`` as
``prompt | model.with_structured_output(schema)`` and never raises:

* ``request`` returns an ``OracleResult`` that is either ``ok`` (a validated
  schema instance) or carries an ``OracleError`` describing what went wrong
  (``unavailable``, ``timeout``, ``invocation`` or ``schema``).  Callers
  compose their own deterministic fallback on top of it.
* ``evaluate`` is the shorthand used when the fallback is a ready-made
  value; it returns an ``Assessment`` tagged ``degraded`` when the default
  was used.

An oracle built without a model is permanently unavailable, which puts every
service into its deterministic mode.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ValidationError

from problem_discovery.domain.exceptions import OracleError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


# -- Results -----------------------------------------------------------------


@dataclass(frozen=True)
class OracleResult(Generic[SchemaT]):
    """Either a validated response or the error that prevented one."""

    value: SchemaT | None = None
    error: OracleError | None = None

    @property
    def is_ok(self) -> bool:
        return self.error is None and self.value is not None

    def unwrap_or(self, default: SchemaT) -> SchemaT:
        return self.value if self.is_ok else default

    @classmethod
    def ok(cls, value: SchemaT) -> OracleResult[SchemaT]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: OracleError) -> OracleResult[SchemaT]:
        return cls(error=error)


@dataclass(frozen=True)
class Assessment(Generic[SchemaT]):
    """An oracle answer, or the caller's default when ``degraded``."""

    value: SchemaT
    degraded: bool = False
    error: OracleError | None = None


# -- Oracle ------------------------------------------------------------------


class SemanticOracle:
    """Structured-output gateway to a chat model.

    Parameters
    ----------
    model:
        A LangChain chat model supporting ``with_structured_output``, or
        ``None`` for a permanently unavailable oracle.
    timeout:
        Default per-call timeout in seconds (``None`` waits forever).
    """

    def __init__(
        self,
        model: BaseChatModel | None = None,
        timeout: float | None = 60.0,
    ) -> None:
        self.model = model
        self._timeout = timeout
        self._chains: dict[tuple[int, type[BaseModel]], Any] = {}
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self.model is not None

    def _chain_for(self, prompt: ChatPromptTemplate, schema: type[BaseModel]) -> Any:
        key = (id(prompt), schema)
        with self._lock:
            chain = self._chains.get(key)
            if chain is None:
                structured_model = self.model.with_structured_output(schema)
                chain = prompt | structured_model
                self._chains[key] = chain
            return chain

    def _invoke_with_timeout(
        self, chain: Any, inputs: dict[str, Any], timeout: float | None
    ) -> Any:
        """Invoke the chain with optional timeout.

        The worker is not joined on timeout; a hung model call is abandoned
        rather than blocking the pipeline.
        """
        if timeout is None:
            return chain.invoke(inputs)
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(chain.invoke, inputs)
            return future.result(timeout=timeout)
        finally:
            pool.shutdown(wait=False)

    @staticmethod
    def _coerce(raw: Any, schema: type[SchemaT]) -> SchemaT:
        if isinstance(raw, schema):
            return raw
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if raw is None:
            raise OracleError(
                "Oracle returned no structured output",
                kind="schema",
                schema_name=schema.__name__,
            )
        try:
            return schema.model_validate(raw)
        except ValidationError as exc:
            raise OracleError(
                f"Oracle response does not match {schema.__name__}: {exc.error_count()} error(s)",
                kind="schema",
                schema_name=schema.__name__,
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    def request(
        self,
        prompt: ChatPromptTemplate,
        inputs: dict[str, Any],
        schema: type[SchemaT],
        timeout: float | None = None,
    ) -> OracleResult[SchemaT]:
        """Ask the model for a *schema* instance.  Never raises."""
        name = schema.__name__
        if self.model is None:
            return OracleResult.failure(
                OracleError("No model configured", kind="unavailable", schema_name=name)
            )
        effective_timeout = self._timeout if timeout is None else timeout
        try:
            chain = self._chain_for(prompt, schema)
            raw = self._invoke_with_timeout(chain, inputs, effective_timeout)
            return OracleResult.ok(self._coerce(raw, schema))
        except OracleError as exc:
            logger.warning("SemanticOracle: %s rejected: %s", name, exc)
            return OracleResult.failure(exc)
        except concurrent.futures.TimeoutError:
            logger.warning(
                "SemanticOracle: %s timed out after %ss", name, effective_timeout
            )
            return OracleResult.failure(
                OracleError(
                    f"Timed out after {effective_timeout}s",
                    kind="timeout",
                    schema_name=name,
                )
            )
        except Exception as exc:
            logger.warning("SemanticOracle: %s call failed: %s", name, exc)
            return OracleResult.failure(
                OracleError(
                    str(exc) or type(exc).__name__,
                    kind="invocation",
                    schema_name=name,
                    details={"error_type": type(exc).__name__},
                )
            )

    def evaluate(
        self,
        prompt: ChatPromptTemplate,
        inputs: dict[str, Any],
        schema: type[SchemaT],
        default: SchemaT,
        timeout: float | None = None,
    ) -> Assessment[SchemaT]:
        """Like ``request`` but substitutes *default* on any failure."""
        result = self.request(prompt, inputs, schema, timeout=timeout)
        if result.is_ok:
            return Assessment(value=result.value)
        return Assessment(value=default, degraded=True, error=result.error)
