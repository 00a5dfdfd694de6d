"""Interceptor plugins and their ordered chain."""

import inspect
import logging
from typing import Any, Callable, Iterator, List, Mapping, Optional

from .models import Context, PreparedRequest

logger = logging.getLogger("luminara.plugins")

HOOKS = ("on_request", "on_response", "on_response_error")


class Plugin:
    """
    Base class for plugins. Override any subset of the hooks.

    Hooks receive the call's Context and may be plain or async functions.
    Plain objects with the same attribute names, and mappings keyed by the
    hook names, are accepted as plugins too.
    """

    name: Optional[str] = None

    def on_request(self, ctx: Context) -> Any:
        return None

    def on_response(self, ctx: Context) -> Any:
        return None

    def on_response_error(self, ctx: Context) -> Any:
        return None


def plugin_name(plugin: Any) -> str:
    if isinstance(plugin, Mapping):
        return plugin.get("name") or "anonymous"
    return getattr(plugin, "name", None) or type(plugin).__name__


def _hook(plugin: Any, name: str) -> Optional[Callable[[Context], Any]]:
    if isinstance(plugin, Mapping):
        return plugin.get(name)
    hook = getattr(plugin, name, None)
    # Hooks a Plugin subclass did not override are skipped.
    if hook is not None and getattr(type(plugin), name, None) is getattr(Plugin, name):
        return None
    return hook


async def _call(hook: Callable[[Context], Any], ctx: Context) -> Any:
    result = hook(ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


class PluginChain:
    """
    Runs plugin hooks in a fixed order.

    on_request runs in registration order; on_response and on_response_error
    run in reverse.
    """

    def __init__(self, plugins: Optional[List[Any]] = None):
        self.plugins: List[Any] = []
        for plugin in plugins or ():
            self.add(plugin)

    def add(self, plugin: Any) -> None:
        if not any(callable(_hook(plugin, name)) for name in HOOKS):
            logger.debug("Plugin %s declares no hooks", plugin_name(plugin))
        self.plugins.append(plugin)

    def __len__(self) -> int:
        return len(self.plugins)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.plugins)

    async def run_on_request(self, ctx: Context) -> None:
        """A hook returning a PreparedRequest replaces ctx.req; exceptions propagate."""
        for plugin in self.plugins:
            hook = _hook(plugin, "on_request")
            if hook is None:
                continue
            result = await _call(hook, ctx)
            if isinstance(result, PreparedRequest):
                ctx.req = result

    async def run_on_response(self, ctx: Context) -> None:
        for plugin in reversed(self.plugins):
            hook = _hook(plugin, "on_response")
            if hook is not None:
                await _call(hook, ctx)

    async def run_on_response_error(self, ctx: Context, normalize: Callable[[BaseException], Any]) -> None:
        """
        Run error hooks right to left.

        A hook that raises replaces ctx.error with the normalized exception
        and the remaining hooks still run. A hook may recover the call by
        setting ctx.res and clearing ctx.error.
        """
        for plugin in reversed(self.plugins):
            hook = _hook(plugin, "on_response_error")
            if hook is None:
                continue
            try:
                await _call(hook, ctx)
            except Exception as exc:
                logger.debug("on_response_error of %s raised %r", plugin_name(plugin), exc)
                ctx.res = None
                ctx.error = normalize(exc)
