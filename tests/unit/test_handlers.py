"""
Unit tests for the handler registry.
"""

import sys
import types
from typing import Any, get_args

import pytest

from delayed_jobs.exceptions import DuplicateHandlerError
from delayed_jobs.types.job import HandlerReturn, JobResult
from delayed_jobs.worker.handlers import HandlerRegistry, load_handler_modules


async def render_pdf(payload_ref: str) -> JobResult:
    return JobResult.ok()


def send_email(payload_ref: str) -> bool:
    return True


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_get(self, registry: HandlerRegistry):
        """Test registering a handler directly."""
        registry.register("calendar_pdf_render", render_pdf)

        assert registry.get("calendar_pdf_render") is render_pdf
        assert "calendar_pdf_render" in registry
        assert len(registry) == 1

    def test_register_as_decorator(self, registry: HandlerRegistry):
        """Test the decorator form returns the original function."""

        @registry.register("email_send", priority=8, description="Send email")
        def handler(payload_ref: str) -> bool:
            return True

        assert registry.get("email_send") is handler
        meta = registry.metadata("email_send")
        assert meta is not None
        assert meta.priority == 8
        assert meta.description == "Send email"
        assert meta.max_attempts is None

    def test_get_unknown_queue(self, registry: HandlerRegistry):
        """Test that lookup of an unregistered queue type returns None."""
        assert registry.get("unknown") is None
        assert registry.metadata("unknown") is None
        assert "unknown" not in registry

    def test_duplicate_registration_rejected(self, registry: HandlerRegistry):
        """Test that a queue type maps to exactly one handler."""
        registry.register("calendar_pdf_render", render_pdf)

        with pytest.raises(DuplicateHandlerError) as exc_info:
            registry.register("calendar_pdf_render", send_email)

        assert exc_info.value.queue_type == "calendar_pdf_render"
        assert registry.get("calendar_pdf_render") is render_pdf

    def test_queue_types(self, registry: HandlerRegistry):
        registry.register("a", render_pdf)
        registry.register("b", send_email)

        assert sorted(registry.queue_types()) == ["a", "b"]

    def test_empty_queue_type_rejected(self, registry: HandlerRegistry):
        with pytest.raises(ValueError):
            registry.register("", render_pdf)

    def test_invalid_max_attempts_rejected(self, registry: HandlerRegistry):
        with pytest.raises(ValueError):
            registry.register("a", render_pdf, max_attempts=0)


class TestLoadHandlerModules:
    """Tests for importing collaborator handler modules."""

    @pytest.fixture
    def handler_module(self):
        """Install a throwaway module exposing register_handlers."""
        module = types.ModuleType("tests_fake_handlers")

        def register_handlers(registry: HandlerRegistry) -> None:
            registry.register("calendar_pdf_render", render_pdf, priority=10)

        module.register_handlers = register_handlers
        sys.modules[module.__name__] = module
        yield module.__name__
        sys.modules.pop(module.__name__, None)

    @pytest.fixture
    def module_without_hook(self):
        module = types.ModuleType("tests_fake_no_hook")
        sys.modules[module.__name__] = module
        yield module.__name__
        sys.modules.pop(module.__name__, None)

    def test_loads_handlers(self, registry: HandlerRegistry, handler_module: str):
        load_handler_modules(registry, [handler_module])

        assert registry.get("calendar_pdf_render") is render_pdf
        assert registry.metadata("calendar_pdf_render").priority == 10

    def test_module_without_register_function(
        self,
        registry: HandlerRegistry,
        module_without_hook: str,
    ):
        with pytest.raises(AttributeError):
            load_handler_modules(registry, [module_without_hook])

    def test_missing_module(self, registry: HandlerRegistry):
        with pytest.raises(ImportError):
            load_handler_modules(registry, ["tests_no_such_module_xyz"])


class TestHandlerReturn:
    def test_accepted_return_types(self):
        assert isinstance(HandlerReturn, types.UnionType)
        assert set(get_args(HandlerReturn)) == {JobResult, bool, tuple[bool, Any], type(None)}
