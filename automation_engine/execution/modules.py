"""
Module function registry and invocation.

Integrations register each callable with an explicit ModuleDescriptor: the
path it answers to, its ordered parameter names and how inputs are passed.
Nothing is inferred from source code. Every invocation is bounded by a
timeout and may go through a circuit breaker and a rate limiter.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from automation_engine.core.errors import ConfigurationError, EngineError
from automation_engine.resilience.registry import ResilienceRegistry

logger = logging.getLogger(__name__)


class CallingConvention(str, Enum):
    """How resolved inputs are handed to a module function."""

    OBJECT = "object"          # func(inputs)
    POSITIONAL = "positional"  # func(*values ordered by params)
    NONE = "none"              # func()


# Display names used by the builder -> registry category
CATEGORY_ALIASES: dict[str, str] = {
    "communication": "communication",
    "social": "social",
    "social media": "social",
    "ai": "ai",
    "data": "data",
    "utilities": "utilities",
    "payments": "payments",
    "productivity": "productivity",
    "business": "business",
    "content": "content",
    "dataprocessing": "dataprocessing",
    "data processing": "dataprocessing",
    "devtools": "devtools",
    "developer tools": "devtools",
    "dev tools": "devtools",
    "e-commerce": "ecommerce",
    "ecommerce": "ecommerce",
    "lead generation": "leads",
    "leads": "leads",
    "video automation": "video",
    "video": "video",
    "external apis": "external-apis",
    "external-apis": "external-apis",
}

# Parameter name -> input names workflow authors commonly use instead
PARAM_ALIASES: dict[str, tuple[str, ...]] = {
    "days": ("amount", "value", "number"),
    "hours": ("amount", "value", "number"),
    "minutes": ("amount", "value", "number"),
    "limit": ("maxResults", "max", "count"),
    "query": ("search", "q", "term"),
    "text": ("message", "content", "body"),
    "arr": ("array", "items", "list"),
    "arr1": ("array1",),
    "arr2": ("array2",),
    "arrays": ("array",),
}


class ParameterMismatchError(EngineError):
    """Inputs could not be mapped onto a positional function's parameters."""


@dataclass
class ModuleDescriptor:
    """Registration record of one module function."""

    path: str
    func: Callable[..., Any]
    params: tuple[str, ...] = ()
    convention: CallingConvention = CallingConvention.OBJECT
    timeout: Optional[float] = None
    circuit: Optional[str] = None     # breaker name in the ResilienceRegistry
    rate_limit: Optional[str] = None  # limiter name in the ResilienceRegistry
    description: str = ""
    aliases: dict[str, tuple[str, ...]] = field(default_factory=dict)


def normalize_module_path(path: str) -> str:
    """
    Canonical "category.module.function" form of a path.

    Raises:
        ConfigurationError: If the path does not have three non-empty segments
    """
    parts = [p.strip() for p in path.split(".")] if isinstance(path, str) else []
    if len(parts) != 3 or not all(parts):
        raise ConfigurationError(
            f"Invalid module path: {path}. Expected format: category.module.function"
        )
    category = parts[0].lower()
    category = CATEGORY_ALIASES.get(category, category)
    return f"{category}.{parts[1]}.{parts[2]}"


def map_positional_arguments(
    descriptor: ModuleDescriptor,
    inputs: dict[str, Any],
) -> list[Any]:
    """
    Order inputs by the declared parameters.

    Exact names win over aliases. Mapping stops at the first parameter with no
    matching input; the remaining trailing parameters keep their defaults.
    """
    values: list[Any] = []
    mapping: list[str] = []

    for name in descriptor.params:
        if name in inputs:
            values.append(inputs[name])
            mapping.append(name)
            continue

        aliases = descriptor.aliases.get(name) or PARAM_ALIASES.get(name, ())
        matched = next((alias for alias in aliases if alias in inputs), None)
        if matched is None:
            break
        values.append(inputs[matched])
        mapping.append(f"{name}<-{matched}")

    if inputs and not values:
        raise ParameterMismatchError(
            f"Parameter mismatch for {descriptor.path}: Function expects "
            f"[{', '.join(descriptor.params)}] but workflow provided [{', '.join(inputs)}]"
        )

    logger.debug(f"Mapped parameters for {descriptor.path}: {mapping}")
    return values


class ModuleRegistry:
    """
    Explicit table of invokable module functions.

    One registry is built per process; tests build their own.
    """

    def __init__(
        self,
        resilience: Optional[ResilienceRegistry] = None,
        default_timeout: float = 60.0,
    ):
        self.resilience = resilience
        self.default_timeout = default_timeout
        self._modules: dict[str, ModuleDescriptor] = {}

    def __contains__(self, path: str) -> bool:
        try:
            return normalize_module_path(path) in self._modules
        except ConfigurationError:
            return False

    def __len__(self) -> int:
        return len(self._modules)

    def register(self, descriptor: ModuleDescriptor) -> ModuleDescriptor:
        """Add a descriptor, replacing any previous one for the same path."""
        descriptor.path = normalize_module_path(descriptor.path)
        if descriptor.convention == CallingConvention.POSITIONAL and not descriptor.params:
            raise ConfigurationError(
                f"Module {descriptor.path} uses positional arguments but declares no params"
            )
        self._modules[descriptor.path] = descriptor
        return descriptor

    def module(
        self,
        path: str,
        params: tuple[str, ...] = (),
        convention: CallingConvention = CallingConvention.OBJECT,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(ModuleDescriptor(
                path=path,
                func=func,
                params=tuple(params),
                convention=convention,
                **options,
            ))
            return func

        return decorator

    def get(self, path: str) -> ModuleDescriptor:
        """
        Look up a descriptor.

        Raises:
            ConfigurationError: Malformed or unregistered path
        """
        canonical = normalize_module_path(path)
        descriptor = self._modules.get(canonical)
        if descriptor is None:
            raise ConfigurationError(f"Module not found: {path}")
        return descriptor

    def list_modules(self) -> list[str]:
        return sorted(self._modules)

    def build_call(self, descriptor: ModuleDescriptor, inputs: Any) -> tuple[list[Any], dict[str, Any]]:
        """Arguments for one call under the descriptor's calling convention."""
        if descriptor.convention == CallingConvention.NONE:
            return [], {}
        if descriptor.convention == CallingConvention.OBJECT:
            return [inputs if inputs is not None else {}], {}
        if not isinstance(inputs, dict):
            return [inputs], {}
        return map_positional_arguments(descriptor, inputs), {}

    async def invoke(self, path: str, inputs: Any) -> Any:
        """
        Invoke a module function with already-resolved inputs.

        Raises:
            ConfigurationError: Malformed or unregistered path
            ParameterMismatchError: Inputs do not fit a positional signature
            TimeoutError: The call exceeded its timeout
        """
        descriptor = self.get(path)
        args, kwargs = self.build_call(descriptor, inputs)
        timeout = descriptor.timeout or self.default_timeout

        async def run() -> Any:
            try:
                async with asyncio.timeout(timeout):
                    if inspect.iscoroutinefunction(descriptor.func):
                        return await descriptor.func(*args, **kwargs)
                    result = await asyncio.to_thread(descriptor.func, *args, **kwargs)
                    if inspect.isawaitable(result):
                        result = await result
                    return result
            except TimeoutError:
                logger.error(f"Module {descriptor.path} timed out after {timeout}s")
                raise TimeoutError(f"Module {descriptor.path} timed out after {timeout}s")

        call: Callable[[], Any] = run
        if self.resilience is not None and descriptor.circuit:
            call = partial(self.resilience.breaker(descriptor.circuit).call, call)
        if self.resilience is not None and descriptor.rate_limit:
            limiter = self.resilience.limiter(descriptor.rate_limit)
            if limiter is not None:
                call = partial(limiter.schedule, call)

        logger.debug(f"Invoking module {descriptor.path}")
        return await call()
