"""Compiles transform script text into a (filter, handler) unit.

Script text is trusted operator configuration and is executed with Python's
own ``compile``/``exec``.  Recognized forms, with the change event bound to
the name ``event``:

* empty or missing text: identity handler, permissive filter;
* a bare expression, e.g. ``{"id": event.id, "doc": event.snapshot}``;
* a statement body with a top-level ``return``, e.g.
  ``event.snapshot["seen"] = True; return event.snapshot``;
* a module defining ``filter(entry)`` and/or ``handler(event[, context])``
  (sync or async) and optionally a ``projection`` list of field names.

Whatever the form, the resulting :class:`TransformUnit` exposes async
callables only.
"""

from __future__ import annotations

import ast
import inspect
import textwrap
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from oplog_connector.errors import TransformCompileError
from oplog_connector.pipeline.events import ResolvedChangeEvent
from oplog_connector.sources.mongo.entry import RawLogEntry

logger = structlog.get_logger()

_FILENAME = "<transform>"
_WRAPPER = "__transform_handler__"


@dataclass(slots=True)
class HandlerContext:
    """Live handles a handler may use for supplementary reads."""

    collection: Any
    database: Any


FilterFn = Callable[[RawLogEntry], Awaitable[bool]]
HandlerFn = Callable[[ResolvedChangeEvent, HandlerContext], Awaitable[Any]]


async def admit_all(entry: RawLogEntry) -> bool:
    return True


async def identity(event: ResolvedChangeEvent, context: HandlerContext) -> Any:
    return event.to_dict()


@dataclass(frozen=True, slots=True)
class TransformUnit:
    """A compiled filter/handler pair; replaced wholesale on recompilation."""

    filter: FilterFn = admit_all
    handler: HandlerFn = identity
    projection: tuple[str, ...] = ()
    source: str | None = None


def compile_transform(text: str | None) -> TransformUnit:
    """Compile *text* into a :class:`TransformUnit`.

    Raises:
        TransformCompileError: on syntax errors, errors raised while executing
            the script's top level, or a script that defines nothing usable.
    """
    if text is None or not text.strip():
        return TransformUnit()
    source = textwrap.dedent(text).strip()
    try:
        unit = _compile(source)
    except TransformCompileError:
        raise
    except Exception as exc:
        msg = f"Transform script failed to compile: {exc}"
        raise TransformCompileError(msg) from exc
    logger.info(
        "transform.compiled",
        projection=list(unit.projection),
        chars=len(source),
    )
    return TransformUnit(
        filter=unit.filter,
        handler=unit.handler,
        projection=unit.projection,
        source=text,
    )


def _compile(source: str) -> TransformUnit:
    try:
        expr = compile(source, _FILENAME, "eval")
    except SyntaxError:
        expr = None
    if expr is not None:
        return TransformUnit(handler=_expression_handler(expr))

    tree = ast.parse(source, _FILENAME, "exec")
    if _has_top_level_return(tree):
        body = textwrap.indent(source, "    ")
        source = f"def {_WRAPPER}(event, context=None):\n{body}\n"
        namespace = _execute(source)
        return TransformUnit(handler=_adapt(namespace[_WRAPPER], 2))

    namespace = _execute(source)
    filter_fn = namespace.get("filter")
    handler_fn = namespace.get("handler")
    if not callable(filter_fn) and not callable(handler_fn):
        msg = (
            "Transform script must be an expression, a body with a return "
            "statement, or define a 'filter' and/or 'handler' function"
        )
        raise TransformCompileError(msg)
    unit = TransformUnit(projection=_projection(namespace.get("projection")))
    return TransformUnit(
        filter=_adapt_filter(filter_fn) if callable(filter_fn) else unit.filter,
        handler=_adapt(handler_fn, 2) if callable(handler_fn) else unit.handler,
        projection=unit.projection,
    )


def _execute(source: str) -> dict[str, Any]:
    namespace: dict[str, Any] = {"__name__": "transform_script"}
    exec(compile(source, _FILENAME, "exec"), namespace)  # noqa: S102
    return namespace


class _ReturnFinder(ast.NodeVisitor):
    def __init__(self) -> None:
        self.found = False

    def visit_Return(self, node: ast.Return) -> None:
        self.found = True

    # Returns inside nested scopes belong to those scopes.
    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        return

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        return

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        return

    def visit_Lambda(self, node: ast.Lambda) -> None:
        return


def _has_top_level_return(tree: ast.Module) -> bool:
    finder = _ReturnFinder()
    for stmt in tree.body:
        finder.visit(stmt)
    return finder.found


def _expression_handler(code: Any) -> HandlerFn:
    async def handler(event: ResolvedChangeEvent, context: HandlerContext) -> Any:
        scope = {"event": event, "context": context}
        result = eval(code, {"__name__": "transform_script"}, scope)  # noqa: S307
        if inspect.isawaitable(result):
            result = await result
        return result

    return handler


def _arity(fn: Callable[..., Any], maximum: int) -> int:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return maximum
    count = 0
    for p in params:
        if p.kind == p.VAR_POSITIONAL:
            return maximum
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD):
            count += 1
    return min(count, maximum)


def _adapt(fn: Callable[..., Any], maximum: int) -> Callable[..., Awaitable[Any]]:
    """Wrap a sync or async callable into the uniform async contract."""
    arity = _arity(fn, maximum)

    async def call(*args: Any) -> Any:
        result = fn(*args[:arity])
        if inspect.isawaitable(result):
            result = await result
        return result

    return call


def _adapt_filter(fn: Callable[..., Any]) -> FilterFn:
    call = _adapt(fn, 1)

    async def admit(entry: RawLogEntry) -> bool:
        return bool(await call(entry))

    return admit


def _projection(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    try:
        fields = tuple(value)
    except TypeError as exc:
        msg = f"projection must be a list of field names, got {type(value).__name__}"
        raise TransformCompileError(msg) from exc
    if not all(isinstance(f, str) for f in fields):
        msg = "projection must contain only field names"
        raise TransformCompileError(msg)
    return fields
