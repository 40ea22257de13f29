"""Chat service: thin facade that wires the engine together for the UI layer.

The service owns the credential broker, the transport channel, the capability
catalog and the conversation state. Each call reads the active provider
configuration fresh, issues a new cancellation generation (superseding any
request still in flight) and drives one :class:`OrchestrationLoop` run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence
from urllib.parse import urlsplit

from ..services.credentials import CredentialVault
from ..services.settings import EngineLimits
from . import prompts
from .ai_types import ConversationTurn, EngineRequest, ImageAttachment, ProviderConfig, ProviderKind
from .errors import ConfigurationError, EngineError
from .orchestration.cancellation import CancellationCoordinator, CancellationToken, race
from .orchestration.context import ContextManager
from .orchestration.dispatcher import ToolDispatcher
from .orchestration.loop import ContentCallback, LoopOutcome, OrchestrationLoop, ToolCallback
from .orchestration.state import ConversationState
from .providers import ProviderAdapter, create_adapter
from .tools.base import CapabilityCatalog, ToolSet
from .tools.internal import EditorBridge, editor_capabilities
from .transport import CredentialBroker, TransportChannel

__all__ = ["ChatService", "ConfigSource", "generate_base_url_candidates"]

LOGGER = logging.getLogger(__name__)

# Returns the active provider configuration, read at the start of every call
ConfigSource = Callable[[], ProviderConfig | None]

_CONNECTION_PROBE = 'Say "Hello from Inkwell!" in exactly 3 words.'
_CONNECTION_PROBE_MAX_TOKENS = 64


def generate_base_url_candidates(base_url: str | None) -> list[str]:
    """Return ``base_url`` followed by progressively shorter path prefixes.

    ``https://host/api/v3/responses`` yields ``.../api/v3/responses``,
    ``.../api/v3``, ``.../api`` and ``https://host``. An empty URL yields
    ``[""]`` (use the provider default); an unparsable one only itself.
    """

    if not base_url:
        return [""]
    clean = base_url.rstrip("/")
    candidates = [clean]
    parts = urlsplit(clean)
    if not parts.scheme or not parts.netloc:
        return candidates
    origin = f"{parts.scheme}://{parts.netloc}"
    segments = [segment for segment in parts.path.split("/") if segment]
    while segments:
        segments.pop()
        path = "/" + "/".join(segments) if segments else ""
        candidates.append(f"{origin}{path}")
    return candidates


class ChatService:
    """Entry point for chat turns, writing commands and connection checks.

    Example:
        service = ChatService(settings.active_provider, broker=broker, editor=bridge)
        outcome = await service.send_chat_message("Tighten the intro")
        print(outcome.state, outcome.content)
    """

    def __init__(
        self,
        config_source: ConfigSource,
        *,
        broker: CredentialBroker | None = None,
        vault: CredentialVault | None = None,
        limits: EngineLimits | None = None,
        catalog: CapabilityCatalog | None = None,
        editor: EditorBridge | None = None,
        state: ConversationState | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config_source: Callable returning the active provider config.
            broker: Credential broker (default: one over ``vault``).
            vault: Credential vault used when no broker is supplied.
            limits: Engine limits (default: :class:`EngineLimits`).
            catalog: Capability catalog (default: an empty one).
            editor: Editor bridge; registers the editor capabilities.
            state: Conversation state (default: a fresh one).
        """
        self._config_source = config_source
        self._limits = (limits or EngineLimits()).clamp()
        self._broker = broker or CredentialBroker(
            vault or CredentialVault(), timeout=self._limits.request_timeout_seconds
        )
        self._channel = TransportChannel(self._broker)
        self._catalog = catalog or CapabilityCatalog()
        self._editor = editor
        if editor is not None:
            for capability in editor_capabilities(editor):
                self._catalog.register_internal(capability)
        self._state = state or ConversationState(CancellationCoordinator())
        self._context = ContextManager(self._limits)
        self._adapters: dict[ProviderKind, ProviderAdapter] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        """The conversation state observed by the UI."""
        return self._state

    @property
    def catalog(self) -> CapabilityCatalog:
        return self._catalog

    @property
    def broker(self) -> CredentialBroker:
        return self._broker

    @property
    def limits(self) -> EngineLimits:
        return self._limits

    def is_configured(self) -> bool:
        """Return whether a provider is selected and can authenticate."""

        config = self._config_source()
        if config is None:
            return False
        if config.provider_kind is ProviderKind.OLLAMA:
            return True
        return self._broker.has_credential(config.credential_ref)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def send_chat_message(
        self,
        message: str,
        *,
        document_context: str | None = None,
        images: Sequence[ImageAttachment] = (),
        content_callback: ContentCallback | None = None,
        tool_callback: ToolCallback | None = None,
    ) -> LoopOutcome:
        """Run one user turn through the orchestration loop.

        Args:
            message: The user's text.
            document_context: Document text to quote in the system prompt;
                defaults to the open document when an editor is attached.
            images: Image attachments for the user turn.
            content_callback: Receives assistant text as it arrives.
            tool_callback: Receives ``(call_id, name, arguments)`` before each tool runs.

        Returns:
            The terminal :class:`LoopOutcome`.

        Raises:
            ConfigurationError: If no provider is configured.
        """
        config = self._require_config()
        token = self._state.coordinator.begin()
        tools = self._catalog.snapshot()
        current_file = self._editor.current_file_path() if self._editor is not None else None
        if document_context is None and self._editor is not None:
            document_context = self._editor.document_content()
        system = prompts.system_prompt(
            config,
            tool_count=len(tools),
            current_file_path=current_file,
            document_context=document_context,
            document_context_chars=self._limits.document_context_chars,
        )
        LOGGER.info(
            "Chat turn generation=%d provider=%s model=%s tools=%d",
            token.generation,
            config.provider_kind.value,
            config.model,
            len(tools),
        )
        loop = self._build_loop(config, tools)
        return await loop.run(
            config,
            ConversationTurn.user(message, images),
            token,
            system_prompt=system,
            content_callback=content_callback,
            tool_callback=tool_callback,
        )

    async def run_command(
        self,
        command: str,
        *,
        selected_text: str | None = None,
        document_content: str | None = None,
        custom_prompt: str | None = None,
        target_language: str | None = None,
        content_callback: ContentCallback | None = None,
    ) -> LoopOutcome:
        """Run a built-in writing command without tools.

        The command's user message is recorded in the conversation like any
        other turn, so it can be followed up in chat.
        """

        writing_command = prompts.WRITING_COMMANDS.get(command)
        if writing_command is None:
            raise ValueError(f"Unknown writing command: {command}")
        config = self._require_config()
        if document_content is None and self._editor is not None:
            document_content = self._editor.document_content()
        if writing_command.requires_selection and not selected_text:
            raise ValueError(f"Command {command!r} needs selected text")
        content = prompts.command_user_content(
            command,
            selected_text=selected_text,
            document_content=document_content,
            custom_prompt=custom_prompt,
            target_language=target_language,
        )
        if not content.strip():
            raise ValueError(f"Command {command!r} has nothing to work on")
        token = self._state.coordinator.begin()
        LOGGER.info("Writing command %s generation=%d", command, token.generation)
        loop = self._build_loop(config, ToolSet())
        return await loop.run(
            config,
            ConversationTurn.user(content, command=command),
            token,
            system_prompt=writing_command.system_prompt,
            content_callback=content_callback,
        )

    def abort(self) -> bool:
        """Abort the in-flight request, keeping any partial text.

        Returns ``False`` when nothing was running.
        """

        token = self._state.coordinator.abort()
        if token is None:
            return False
        self._state.interrupt(token)
        LOGGER.info("Aborted generation %d", token.generation)
        return True

    def clear_history(self) -> None:
        self._state.clear()

    # ------------------------------------------------------------------
    # Connection checks
    # ------------------------------------------------------------------

    async def test_connection(self, config: ProviderConfig | None = None) -> bool:
        """Send a tiny prompt and report whether the provider answered.

        The probe runs under its own token so it never supersedes a chat turn.
        """

        config = config or self._config_source()
        if config is None:
            return False
        token = CancellationToken(0)
        request = EngineRequest(
            turns=(ConversationTurn.user(_CONNECTION_PROBE),),
            max_tokens=_CONNECTION_PROBE_MAX_TOKENS,
        )
        adapter = self._adapter_for(config.provider_kind)
        try:
            response = await race(
                adapter.send(config, request, token),
                token,
                timeout=self._limits.request_timeout_seconds,
            )
        except EngineError as exc:
            LOGGER.info("Connection test for %s failed: %s", config.id, exc.message)
            return False
        except asyncio.TimeoutError:
            LOGGER.info("Connection test for %s timed out", config.id)
            return False
        finally:
            token.cancel("probe finished")
        return bool(response.text_content)

    async def resolve_base_url(self, config: ProviderConfig | None = None) -> str | None:
        """Find the first working base URL by stripping path segments.

        Returns the working candidate (``""`` meaning the provider default)
        or ``None`` when none answered.
        """

        config = config or self._config_source()
        if config is None:
            return None
        for candidate in generate_base_url_candidates(config.base_url):
            LOGGER.debug("Trying base URL %r for %s", candidate, config.id)
            if await self.test_connection(config.with_base_url(candidate)):
                return candidate
        return None

    async def aclose(self) -> None:
        self.abort()
        await self._broker.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_config(self) -> ProviderConfig:
        config = self._config_source()
        if config is None:
            raise ConfigurationError("No AI provider is configured")
        return config

    def _adapter_for(self, kind: ProviderKind) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            adapter = create_adapter(
                kind,
                self._channel,
                idle_timeout=self._limits.stream_idle_timeout_seconds,
                default_max_tokens=self._limits.default_max_tokens,
            )
            self._adapters[kind] = adapter
        return adapter

    def _build_loop(self, config: ProviderConfig, tools: ToolSet) -> OrchestrationLoop:
        dispatcher = ToolDispatcher(
            tools,
            editor=self._editor,
            timeout_seconds=self._limits.tool_timeout_seconds,
            max_result_chars=self._limits.tool_result_max_chars,
        )
        return OrchestrationLoop(
            self._adapter_for(config.provider_kind),
            dispatcher,
            self._state,
            context=self._context,
            limits=self._limits,
        )
