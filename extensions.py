from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Any, Callable, Dict, List, Optional, Sequence

from lexer import ASKError


EXTENSION_API_VERSION = 1

# Events emitted by the interpreter, each with the payload its handlers get
# after the interpreter itself:
#   program_start -> Executable
#   on_output     -> str written to the sink
#   on_error      -> ASKRuntimeError
#   program_end   -> RuntimeState
# Extensions observe execution; they can never add or replace mnemonics.
EVENTS = ("program_start", "on_output", "on_error", "program_end")


class ASKExtensionError(Exception):
    pass


class HookFailure(ASKExtensionError):
    """A registered callback raised while a program was running."""

    def __init__(self, owner: str, where: str, cause: BaseException) -> None:
        super().__init__(f"Extension '{owner}' failed in {where}: {cause}")
        self.owner = owner
        self.where = where
        self.cause = cause


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    """What a step rule sees: the operation about to run and the live state."""

    step_index: int
    operation: Any  # parser.Operation
    state: Any  # interpreter.RuntimeState
    location: Any  # SourceLocation | None

    @property
    def rule(self) -> str:
        return self.operation.mnemonic

    @property
    def program_counter(self) -> int:
        return self.state.program_counter

    @property
    def call_depth(self) -> int:
        return len(self.state.call_stack)


@dataclass(frozen=True)
class Hook:
    owner: str
    callback: Callable[[Any, Any], None]
    priority: int = 0


@dataclass(frozen=True)
class StepRule:
    owner: str
    name: str
    every_n: int
    callback: Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    hooks: Dict[str, List[Hook]] = field(default_factory=lambda: {event: [] for event in EVENTS})
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[[Any, Any], None], *, priority: int = 0, ext_name: str = "host") -> None:
        if event not in self.hooks:
            raise ASKExtensionError(f"Unknown event '{event}'")
        hooks = self.hooks[event]
        hooks.append(Hook(owner=ext_name, callback=handler, priority=priority))
        # Stable: equal priorities keep registration order.
        hooks.sort(key=attrgetter("priority"), reverse=True)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str = "host") -> None:
        if every_n <= 0:
            raise ASKExtensionError(f"Step rule '{name}' of '{ext_name}': every_n_steps must be >= 1")
        self.step_rules.append(StepRule(owner=ext_name, name=name, every_n=every_n, callback=handler))

    def emit(self, event: str, interpreter: Any, payload: Any) -> None:
        for hook in self.hooks[event]:
            try:
                hook.callback(interpreter, payload)
            except ASKError:
                raise
            except Exception as exc:
                raise HookFailure(hook.owner, f"'{event}'", exc) from exc

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if ctx.step_index % rule.every_n:
                continue
            try:
                rule.callback(interpreter, ctx)
            except ASKError:
                raise
            except Exception as exc:
                raise HookFailure(rule.owner, f"step rule '{rule.name}'", exc) from exc


@dataclass
class RuntimeServices:
    extensions: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def loaded(self, name: str) -> bool:
        return any(info.name == name for info in self.extensions)


class ExtensionAPI:
    """Handle passed to ``ask_lang_register(ext)``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.info = ExtensionMetadata(name=ext_name)

    @property
    def name(self) -> str:
        return self.info.name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api != EXTENSION_API_VERSION:
            raise ASKExtensionError(
                f"Extension '{name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self.info = ExtensionMetadata(name=name, version=version, requires_api=requires_api)

    def on_event(self, event: str, handler: Optional[Callable[[Any, Any], None]] = None, *, priority: int = 0):
        def register(fn: Callable[[Any, Any], None]) -> Callable[[Any, Any], None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self.name)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        def register(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self.name)
            return fn

        return register if handler is None else register(handler)


def load_extension_module(path: str) -> Any:
    """Import an extension file under a name derived from its absolute path."""
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise ASKExtensionError(f"Extension not found: {path}")
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    spec = importlib.util.spec_from_file_location(f"ask_ext_{digest}", path)
    if spec is None or spec.loader is None:
        raise ASKExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Sibling imports resolve against the extension's own directory.
    directory = os.path.dirname(path)
    sys.path.insert(0, directory)
    try:
        spec.loader.exec_module(module)
    except ASKExtensionError:
        raise
    except Exception as exc:
        raise ASKExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if sys.path[:1] == [directory]:
            del sys.path[0]
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        module = load_extension_module(path)
        api_version = getattr(module, "ASK_LANG_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise ASKExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "ask_lang_register", None)
        if not callable(register):
            raise ASKExtensionError(f"Extension {path} must define callable ask_lang_register(ext)")
        default_name = getattr(module, "ASK_LANG_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(default_name))
        try:
            register(ext)
        except ASKExtensionError:
            raise
        except Exception as exc:
            raise ASKExtensionError(f"Extension '{ext.name}' failed to register: {exc}") from exc
        if services.loaded(ext.name):
            raise ASKExtensionError(f"Extension '{ext.name}' is already loaded")
        services.extensions.append(ext.info)
    return services
