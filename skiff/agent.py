import argparse
import json
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    PROVIDERS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .errors import AgentError, ConfigError, ContextOverflowError, TransportError
from .history import SessionRecord, SessionStore
from .permissions import PermissionGate, describe_call, risk_level
from .stream import StreamDecoder, StreamResult, ToolCallInvocation, usage_to_dict
from .tools import TOOLS, ToolContext, ToolName, dispatch

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 500
EXPORT_PREVIEW_CHARS = 2000

DEFAULT_MAX_TURNS = 100
DEFAULT_CONTEXT_TOKENS = 131072
DEFAULT_COMPACT_KEEP = 20
AUTO_COMPACT_RATIO = 0.8

LENGTH_NUDGE = (
    "Your response was cut off. Please use the provided tools to complete the task step by step."
)

_encoder = tiktoken.get_encoding("cl100k_base")

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

# provider -> (litellm prefix, default model, credential env vars)
_PROVIDER_SPECS = {
    "xai": ("xai", "grok-4-0709", ("XAI_API_KEY", "GROK_API_KEY")),
    "openrouter": ("openrouter", "x-ai/grok-4", ("OPENROUTER_API_KEY",)),
    "lmstudio": ("openai", None, ()),
}
LMSTUDIO_DEFAULT_BASE_URL = "http://127.0.0.1:1234"


# ---------------------------------------------------------------------------
# LLM settings and calls
# ---------------------------------------------------------------------------


@dataclass
class LLMSettings:
    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    max_output_tokens: int = 16384
    temperature: float | None = 0.7

    @property
    def model_string(self) -> str:
        prefix = _PROVIDER_SPECS[self.provider][0]
        if self.provider == "openrouter":
            # Only strip a doubled prefix ("openrouter/openrouter/free"); an
            # org named "openrouter" in "openrouter/free" is part of the id.
            bare = (
                self.model[len("openrouter/") :]
                if self.model.startswith("openrouter/openrouter/")
                else self.model
            )
        else:
            bare = self.model.removeprefix(prefix + "/")
        return f"{prefix}/{bare}"

    def provider_kwargs(self) -> dict:
        if self.provider == "lmstudio":
            base = (self.base_url or LMSTUDIO_DEFAULT_BASE_URL).rstrip("/")
            return {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs


def resolve_llm_settings(args, environ=None) -> LLMSettings:
    """Pick model and credential for the configured provider.

    Raises ConfigError when the provider is unknown or a credential is missing.
    """
    environ = os.environ if environ is None else environ
    provider = args.provider
    if provider not in _PROVIDER_SPECS:
        raise ConfigError(
            f"unknown provider {provider!r} (expected one of: {', '.join(PROVIDERS)})"
        )
    _, default_model, env_vars = _PROVIDER_SPECS[provider]

    model = args.model or default_model
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    api_key = args.api_key
    if not api_key:
        for var in env_vars:
            if environ.get(var):
                api_key = environ[var]
                break
    if env_vars and not api_key:
        raise ConfigError(
            f"--api-key or {' / '.join(env_vars)} env var required for {provider} provider"
        )

    return LLMSettings(
        provider=provider,
        model=model,
        api_key=api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
    )


def _llm_error(e: Exception, settings: LLMSettings) -> Exception:
    """Map a litellm exception onto the agent's error taxonomy."""
    import litellm

    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextOverflowError("context window exceeded (typed)")
    if isinstance(e, litellm.APIConnectionError):
        return TransportError(f"could not connect to {settings.provider}: {e}")
    if isinstance(e, litellm.AuthenticationError):
        return ConfigError(f"authentication failed for {settings.provider}: {e}")
    if isinstance(e, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(str(e)):
        return ContextOverflowError(f"context window exceeded (inferred): {e}")
    return AgentError(f"LLM call failed: {e}")


def call_llm(
    settings: LLMSettings,
    messages: list,
    tools: list,
    *,
    stream: bool = False,
    cancel_event: threading.Event | None = None,
    on_content=None,
) -> StreamResult:
    """Call LiteLLM and return the assistant turn as a StreamResult."""
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(
        model=settings.model_string,
        messages=messages,
        max_tokens=settings.max_output_tokens,
        tools=tools,
        tool_choice="auto",
        **settings.provider_kwargs(),
    )
    if settings.temperature is not None:
        completion_kwargs["temperature"] = settings.temperature
    if stream:
        completion_kwargs["stream"] = True
        completion_kwargs["stream_options"] = {"include_usage": True}

    logger.debug(
        "completion request: model=%s messages=%d stream=%s",
        completion_kwargs["model"],
        len(messages),
        stream,
    )
    try:
        response = litellm.completion(**completion_kwargs)
        if stream:
            decoder = StreamDecoder(cancel_event=cancel_event, on_content=on_content)
            return decoder.decode(response)
    except Exception as e:
        raise _llm_error(e, settings) from e

    choices = getattr(response, "choices", None)
    if not choices:
        raise AgentError("LLM call failed: response contained no choices")
    choice = choices[0]
    msg = choice.message
    tool_calls = [
        ToolCallInvocation(
            id=tc.id, name=tc.function.name, arguments=tc.function.arguments or ""
        )
        for tc in (msg.tool_calls or [])
    ]
    return StreamResult(
        content=msg.content or "",
        tool_calls=tool_calls,
        finish_reason=choice.finish_reason,
        usage=usage_to_dict(getattr(response, "usage", None)),
    )


# ---------------------------------------------------------------------------
# Transcript bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: dict | None) -> None:
        if not usage:
            return
        prompt = usage.get("prompt_tokens") or 0
        completion = usage.get("completion_tokens") or 0
        self.prompt_tokens += prompt
        self.completion_tokens += completion
        self.total_tokens += usage.get("total_tokens") or (prompt + completion)

    def reset(self) -> None:
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.total_tokens = 0


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def compact_messages(messages: list, keep: int = DEFAULT_COMPACT_KEEP) -> list:
    """Keep the leading system message plus the last `keep` messages.

    This is lossy: everything in between is discarded for good. Tool
    results at the start of the kept tail whose assistant call was cut off
    are dropped too, so every tool message still follows its call.
    """
    head = messages[:1] if messages and messages[0].get("role") == "system" else []
    body = messages[len(head) :]
    if len(body) <= keep:
        return list(messages)
    tail = body[-keep:] if keep > 0 else []
    while tail and tail[0].get("role") == "tool":
        tail.pop(0)
    return head + tail


def assistant_message(reply: StreamResult) -> dict:
    msg = {"role": "assistant", "content": reply.content or ""}
    if reply.tool_calls:
        msg["tool_calls"] = [tc.to_dict() for tc in reply.tool_calls]
    return msg


def _tool_message(call_id: str, content: str) -> dict:
    return {"role": "tool", "tool_call_id": call_id, "content": content}


class Conversation:
    """Per-session state: transcript, token usage, permissions, working dirs."""

    def __init__(
        self,
        settings: LLMSettings | None = None,
        *,
        system_prompt: str | None = None,
        gate: PermissionGate | None = None,
        working_dirs: list[str] | None = None,
        stream: bool = True,
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
        compact_keep: int = DEFAULT_COMPACT_KEEP,
        store: SessionStore | None = None,
        record: SessionRecord | None = None,
    ):
        self.settings = settings
        self.messages: list[dict] = []
        if system_prompt:
            self.messages.append({"role": "system", "content": system_prompt})
        self.usage = TokenUsage()
        self.gate = gate or PermissionGate()
        self.working_dirs = list(working_dirs or [os.getcwd()])
        self.stream = stream
        self.echo = False
        self.cancel_event = threading.Event()
        self.max_context_tokens = max_context_tokens
        self.compact_keep = compact_keep
        self.store = store
        self.record = record
        self.turns_completed = 0
        self.started_at = time.monotonic()

    @property
    def tool_context(self) -> ToolContext:
        return ToolContext(working_dirs=self.working_dirs)

    def add_user_message(self, text: str) -> None:
        self.messages.append({"role": "user", "content": text})

    def leading_system(self) -> list[dict]:
        return [m for m in self.messages[:1] if m.get("role") == "system"]

    def compact(self, keep: int | None = None, tools: list | None = None) -> tuple[int, int, int]:
        """Compact in place. Returns (messages_removed, tokens_before, tokens_after)."""
        keep = self.compact_keep if keep is None else keep
        before = estimate_tokens(self.messages, tools)
        count = len(self.messages)
        self.messages[:] = compact_messages(self.messages, keep)
        return count - len(self.messages), before, estimate_tokens(self.messages, tools)

    def clear(self) -> int:
        """Drop everything but the system prompt, reset usage, start a new session."""
        leading = self.leading_system()
        dropped = len(self.messages) - len(leading)
        self.messages[:] = leading
        self.usage.reset()
        self.record = None
        return dropped

    def resume(self, record: SessionRecord) -> None:
        messages = list(record.messages)
        if not any(m.get("role") == "system" for m in messages[:1]):
            messages = self.leading_system() + messages
        self.messages[:] = messages
        self.record = record

    def close_dangling_tool_calls(self, reason: str) -> None:
        """Answer tool calls of the last assistant message that got no result."""
        for idx in range(len(self.messages) - 1, -1, -1):
            msg = self.messages[idx]
            if msg.get("role") == "assistant":
                answered = {
                    m.get("tool_call_id") for m in self.messages[idx + 1 :] if m.get("role") == "tool"
                }
                for tc in msg.get("tool_calls") or []:
                    if tc["id"] not in answered:
                        self.messages.append(_tool_message(tc["id"], f"error: {reason}"))
                return

    def save(self) -> None:
        if self.store is None:
            return
        if len(self.messages) == len(self.leading_system()):
            return
        try:
            if self.record is None:
                self.record = self.store.create(self.working_dirs[0])
            self.record.messages = list(self.messages)
            self.store.save(self.record)
        except OSError as e:
            fmt.warning(f"failed to save session: {e}")


@dataclass
class LoopResult:
    answer: str | None
    exhausted: bool = False
    cancelled: bool = False


def handle_tool_call(tool_call: ToolCallInvocation, conv: Conversation, verbose: bool) -> dict:
    """Run one tool call through permission and dispatch; return the tool message."""
    name = tool_call.name

    try:
        args = json.loads(tool_call.arguments) if tool_call.arguments.strip() else {}
    except json.JSONDecodeError as e:
        if verbose:
            fmt.tool_error(name, f"invalid JSON: {e}")
        return _tool_message(tool_call.id, f"error: invalid JSON in tool arguments: {e}")
    if not isinstance(args, dict):
        if verbose:
            fmt.tool_error(name, "arguments are not a JSON object")
        return _tool_message(
            tool_call.id, "error: invalid JSON in tool arguments: expected an object"
        )

    try:
        ToolName(name)
    except ValueError:
        if verbose:
            fmt.tool_error(name, "unknown tool")
        return _tool_message(tool_call.id, f"error: unknown tool: {name!r}")

    if verbose:
        pretty = json.dumps(args, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    allowed = conv.gate.request_permission(
        name, describe_call(name, args), risk_level(name), args
    )
    if not allowed:
        if verbose:
            fmt.tool_error(name, "permission denied")
        return _tool_message(tool_call.id, "error: permission denied by user")

    t0 = time.monotonic()
    result = dispatch(name, args, conv.tool_context)
    elapsed = time.monotonic() - t0

    if result.warning:
        fmt.security_warning(result.warning)
    if verbose:
        if result.success:
            fmt.tool_result(name, elapsed, result.output[:MAX_RESULT_PREVIEW])
        else:
            fmt.tool_error(name, result.error or "failed")
    return _tool_message(tool_call.id, result.to_content())


def _last_assistant_text(messages: list) -> str | None:
    for m in reversed(messages):
        if m.get("role") == "assistant" and m.get("content"):
            return m["content"]
    return None


def run_agent_loop(
    conv: Conversation,
    tools: list = TOOLS,
    llm=None,
    *,
    max_turns: int = DEFAULT_MAX_TURNS,
    verbose: bool = True,
) -> LoopResult:
    """Run the tool-calling loop until a final answer, cancellation or max turns.

    Mutates conv.messages in place. `llm` defaults to call_llm bound to the
    conversation's settings and is called as
    llm(messages, tools, stream=..., cancel_event=..., on_content=...).
    """
    if llm is None:

        def llm(messages, tools, **kwargs):
            return call_llm(conv.settings, messages, tools, **kwargs)

    conv.cancel_event.clear()
    turns = 0

    def request() -> StreamResult:
        on_content = fmt.stream_text if conv.echo and conv.stream else None
        try:
            reply = llm(
                conv.messages,
                tools,
                stream=conv.stream,
                cancel_event=conv.cancel_event,
                on_content=on_content,
            )
        except KeyboardInterrupt:
            conv.cancel_event.set()
            return StreamResult(cancelled=True)
        if on_content is not None and reply.content:
            fmt.stream_end()
        return reply

    while turns < max_turns:
        turns += 1
        token_est = estimate_tokens(conv.messages, tools)
        if token_est >= AUTO_COMPACT_RATIO * conv.max_context_tokens:
            removed, before, token_est = conv.compact(tools=tools)
            fmt.warning(
                f"context at ~{before} tokens, auto-compacted: "
                f"{removed} older messages discarded (~{token_est} tokens now)"
            )
        if verbose:
            fmt.turn_header(turns, max_turns, token_est)

        t0 = time.monotonic()
        try:
            reply = request()
        except ContextOverflowError:
            fmt.warning("context window exceeded, compacting history...")
            removed, _, after = conv.compact(tools=tools)
            if removed == 0:
                raise AgentError("context window exceeded and nothing left to compact")
            if verbose:
                fmt.context_stats("Context after compaction", after)
            t0 = time.monotonic()
            try:
                reply = request()
            except ContextOverflowError:
                raise AgentError("context window exceeded even after compaction")
        elapsed = time.monotonic() - t0

        if reply.cancelled:
            fmt.warning("response cancelled, partial output discarded.")
            return LoopResult(None, cancelled=True)

        conv.usage.add(reply.usage)
        if verbose:
            fmt.llm_timing(elapsed, reply.finish_reason)
        conv.messages.append(assistant_message(reply))
        conv.turns_completed += 1

        echoed = conv.echo and conv.stream
        if (
            reply.content
            and (reply.tool_calls or reply.finish_reason == "length")
            and verbose
            and not echoed
        ):
            fmt.assistant_text(reply.content)

        if not reply.tool_calls:
            if reply.finish_reason == "length":
                if verbose:
                    fmt.info("Response truncated (finish_reason=length), prompting continuation.")
                conv.add_user_message(LENGTH_NUDGE)
                continue
            if verbose:
                fmt.completion(turns, "ok")
            return LoopResult(reply.content)

        for tool_call in reply.tool_calls:
            conv.messages.append(handle_tool_call(tool_call, conv, verbose))

        if verbose:
            fmt.context_stats(
                f"Context after turn {turns}", estimate_tokens(conv.messages, tools)
            )

    if verbose:
        fmt.completion(turns, "max_turns")
    return LoopResult(_last_assistant_text(conv.messages), exhausted=True)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="skiff",
        usage="%(prog)s [options] [question]",
        description="A terminal coding agent with tool calling and per-call permission prompts.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Run a single interaction with this question. Without it, start the REPL.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Stay in the interactive session after answering the question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: xai (default), openrouter, lmstudio (local).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: grok-4-0709 for xai).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: provider's endpoint, http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 16384).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size used for auto-compaction (default: 131072).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations per question (default: 100).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--allow-dir",
        type=str,
        action="append",
        default=None,
        help="Add an extra working directory (repeatable).",
    )
    parser.add_argument(
        "--auto-approve",
        type=str,
        action="append",
        default=None,
        help='Comma-separated tools to run without asking; "read" covers all read-only tools.',
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        help="Approve every tool call without asking. Security checks still apply.",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_const",
        const=False,
        default=_UNSET,
        help="Wait for complete responses instead of streaming.",
    )
    parser.add_argument(
        "--resume",
        nargs="?",
        const="",
        default=None,
        metavar="ID",
        help="Resume a saved session by id, or the most recent one.",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to use instead of the built-in one.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't save sessions to ~/.config/skiff/history.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--verbose-log",
        action="store_true",
        help="Log internal debug events to stderr (also enabled by SKIFF_LOG=1).",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/skiff.toml instead of the global config.",
    )
    return parser


def _handle_init_config(args) -> None:
    if args.project:
        dest = Path(args.base_dir).resolve() / "skiff.toml"
    else:
        dest = global_config_dir() / "config.toml"
    if dest.exists():
        print(f"error: {dest} already exists, not overwriting", file=sys.stderr)
        sys.exit(1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(generate_config(project=args.project), encoding="utf-8")
    print(f"Wrote {dest}")


def _setup_logging(enabled: bool) -> None:
    if not (enabled or os.environ.get("SKIFF_LOG")):
        return
    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    # litellm and httpx are chatty at DEBUG
    for noisy in ("LiteLLM", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _split_csv(values) -> list[str]:
    out = []
    for value in values or []:
        out.extend(part.strip() for part in value.split(",") if part.strip())
    return out


def _resolve_working_dirs(base_dir: str, extra: list[str]) -> list[str]:
    base = Path(base_dir).expanduser().resolve()
    if not base.is_dir():
        raise AgentError(f"--base-dir is not a directory: {base_dir}")
    dirs = [str(base)]
    for d in extra:
        p = Path(d).expanduser().resolve()
        if not p.is_dir():
            raise AgentError(f"--allow-dir path is not a directory: {d}")
        if p == Path(p.anchor):
            raise AgentError(f"--allow-dir cannot be the filesystem root: {d}")
        if str(p) not in dirs:
            dirs.append(str(p))
    return dirs


def build_system_prompt(args, base_dir: str) -> str | None:
    if args.no_system_prompt:
        return None
    if args.system_prompt:
        content = args.system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").rstrip()
    now = datetime.now().astimezone()
    content += (
        f"\n\nWorking directory: {base_dir}"
        f"\nPlatform: {sys.platform}"
        f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )
    return content


def _version() -> str:
    try:
        return metadata.version("skiff")
    except metadata.PackageNotFoundError:
        return "unknown"


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(0)

    if args.init_config:
        _handle_init_config(args)
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        parser.error(str(e))
    apply_config_to_args(args, config)

    args.auto_approve = _split_csv(args.auto_approve)
    if args.yolo:
        args.auto_approve.append("*")
    args.verbose = not args.quiet

    _setup_logging(args.verbose_log)
    fmt.init(color=args.color, no_color=args.no_color, quiet=args.quiet)

    if args.max_output_tokens > args.max_context_tokens:
        parser.error("--max-output-tokens must be <= --max-context-tokens.")

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    settings = resolve_llm_settings(args)
    working_dirs = _resolve_working_dirs(args.base_dir, args.allow_dir)
    gate = PermissionGate(
        auto_approve=args.auto_approve,
        safe_command_classes=args.safe_command_classes,
    )
    store = None if args.no_history else SessionStore()

    conv = Conversation(
        settings,
        system_prompt=build_system_prompt(args, working_dirs[0]),
        gate=gate,
        working_dirs=working_dirs,
        stream=args.stream,
        max_context_tokens=args.max_context_tokens,
        compact_keep=args.compact_keep,
        store=store,
    )

    if args.resume is not None:
        if store is None:
            raise AgentError("--resume cannot be combined with --no-history")
        record = store.load(args.resume) if args.resume else store.latest()
        if record is None:
            fmt.warning("No previous session found, starting a new conversation.")
        else:
            conv.resume(record)
            if args.verbose:
                fmt.info(f"Resumed session {record.id}: {record.title}")

    if args.verbose:
        fmt.model_info(f"Using {settings.model_string}")

    if args.question and not args.repl:
        conv.add_user_message(args.question)
        result = run_agent_loop(conv, TOOLS, max_turns=args.max_turns, verbose=args.verbose)
        conv.save()
        if result.answer is not None:
            print(result.answer)
        if result.cancelled:
            sys.exit(130)
        if result.exhausted:
            fmt.warning("max turns reached, agent stopped.")
            sys.exit(2)
        return

    conv.echo = args.verbose
    if args.question:
        _run_interaction(conv, args.question, args.max_turns, args.verbose)
    repl_loop(conv, max_turns=args.max_turns, verbose=args.verbose)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _run_interaction(conv: Conversation, line: str, max_turns: int, verbose: bool) -> None:
    """One user message through the agent loop. Service errors end the turn only."""
    conv.add_user_message(line)
    try:
        result = run_agent_loop(conv, TOOLS, max_turns=max_turns, verbose=verbose)
    except KeyboardInterrupt:
        conv.close_dangling_tool_calls("interrupted by user")
        fmt.warning("interrupted, question aborted.")
        conv.save()
        return
    except TransportError as e:
        if conv.turns_completed == 0:
            raise
        fmt.error(str(e))
        return
    except ConfigError:
        raise
    except AgentError as e:
        fmt.error(str(e))
        return

    conv.save()
    if result.answer is not None and not (conv.echo and conv.stream):
        print(result.answer)
    if result.exhausted:
        fmt.warning("max turns reached for this question.")


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start over: drop the conversation and reset token usage\n"
        "  /compact [N]       Keep only the system prompt and the last N messages (default 20)\n"
        "  /usage             Show token usage for this session\n"
        "  /context           Show context window usage\n"
        "  /stream            Toggle streaming responses\n"
        "  /permissions       Show permission settings and session approvals\n"
        "  /add-dir <path>    Add a working directory\n"
        "  /history           List saved sessions\n"
        "  /resume <id>       Load a saved session\n"
        "  /export [file]     Save the conversation as Markdown, or preview it\n"
        "  /model [name]      Show or change the model\n"
        "  /status            Show session status\n"
        "  /pwd               Show working directories\n"
        "  /version           Show the skiff version\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_compact(conv: Conversation, arg: str) -> None:
    """Manually compact the conversation. Discarded messages are gone for good."""
    arg = arg.strip()
    keep = conv.compact_keep
    if arg:
        try:
            keep = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
        if keep < 1:
            fmt.warning("must keep at least 1 message")
            return
    removed, before, after = conv.compact(keep, tools=TOOLS)
    fmt.info(
        f"compacted: removed {removed} messages, kept {len(conv.messages)} "
        f"({before} -> {after} tokens). Removed messages cannot be recovered."
    )


def _repl_context(conv: Conversation) -> None:
    tokens = estimate_tokens(conv.messages, TOOLS)
    pct = 100 * tokens / conv.max_context_tokens
    fmt.info(
        f"{len(conv.messages)} messages, ~{tokens} of {conv.max_context_tokens} tokens "
        f"({pct:.1f}%). Auto-compaction at {int(AUTO_COMPACT_RATIO * 100)}%."
    )


def _repl_add_dir(conv: Conversation, path_str: str) -> None:
    path_str = path_str.strip()
    if not path_str:
        fmt.warning("/add-dir requires a path argument")
        return
    p = Path(path_str).expanduser().resolve()
    if not p.is_dir():
        fmt.warning(f"not a directory: {path_str}")
        return
    if p == Path(p.anchor):
        fmt.warning("cannot add filesystem root")
        return
    if str(p) in conv.working_dirs:
        fmt.info(f"already a working directory: {p}")
        return
    conv.working_dirs.append(str(p))
    fmt.info(f"added working directory: {p}")


def _repl_history(conv: Conversation) -> None:
    if conv.store is None:
        fmt.warning("history is disabled (--no-history)")
        return
    rows = [
        (r.id, r.title, r.updated_at[:19].replace("T", " "), len(r.messages))
        for r in conv.store.list()
    ]
    fmt.session_list(rows)


def _repl_resume(conv: Conversation, session_id: str) -> None:
    if conv.store is None:
        fmt.warning("history is disabled (--no-history)")
        return
    session_id = session_id.strip()
    if not session_id:
        fmt.warning("/resume requires a session id (see /history)")
        return
    record = conv.store.load(session_id)
    if record is None:
        fmt.warning(f"no session with id {session_id}")
        return
    conv.save()
    conv.resume(record)
    fmt.info(f"resumed {record.id}: {record.title} ({len(record.messages)} messages)")


_EXPORT_ROLES = {"user": "You", "assistant": "Assistant", "tool": "Tool"}


def export_markdown(messages: list) -> str:
    """Render the transcript, minus the system prompt, as Markdown sections."""
    sections = []
    for msg in messages:
        role = msg.get("role")
        if role not in _EXPORT_ROLES:
            continue
        body = msg.get("content") or ""
        for tc in msg.get("tool_calls") or []:
            fn = tc.get("function", {})
            body += f"\n\n`{fn.get('name')}` {fn.get('arguments', '')}"
        sections.append(f"## {_EXPORT_ROLES[role]}\n\n{body.strip()}\n")
    return "\n---\n\n".join(sections)


def _repl_export(conv: Conversation, filename: str) -> None:
    """Write the transcript to a file, or preview it when no file is given."""
    text = export_markdown(conv.messages)
    filename = filename.strip()
    if not filename:
        if not text:
            fmt.info("nothing to export yet")
            return
        print(text[:EXPORT_PREVIEW_CHARS])
        if len(text) > EXPORT_PREVIEW_CHARS:
            fmt.info("... (truncated, use /export <file> to save the full conversation)")
        return
    dest = Path(filename).expanduser()
    if not dest.is_absolute():
        dest = Path(conv.working_dirs[0]) / dest
    try:
        dest.write_text(text + "\n", encoding="utf-8")
    except OSError as e:
        fmt.error(f"export failed: {e}")
        return
    fmt.info(f"conversation exported to {dest.resolve()}")


def _repl_model(conv: Conversation, name: str) -> None:
    name = name.strip()
    if conv.settings is None:
        fmt.warning("no model configured for this session")
        return
    if not name:
        fmt.info(f"model: {conv.settings.model_string}")
        return
    conv.settings = replace(conv.settings, model=name)
    fmt.info(f"switched to {conv.settings.model_string}")


def _repl_status(conv: Conversation) -> None:
    uptime = int(time.monotonic() - conv.started_at)
    record = conv.record
    rows = [
        ("Version", _version()),
        ("Model", conv.settings.model_string if conv.settings else "?"),
        ("Session", record.title if record else "(unsaved)"),
        ("Session ID", record.id if record else "-"),
        ("Messages", str(len(conv.messages))),
        ("Uptime", f"{uptime // 60}m {uptime % 60}s"),
        ("Streaming", "on" if conv.stream else "off"),
        ("Working dir", conv.working_dirs[0]),
        ("Platform", sys.platform),
        ("Python", sys.version.split()[0]),
    ]
    fmt.key_values(rows)


def _repl_pwd(conv: Conversation) -> None:
    lines = ["Working directories:"]
    for i, d in enumerate(conv.working_dirs):
        lines.append(f"  {'→' if i == 0 else ' '} {d}")
    fmt.info("\n".join(lines))


def repl_loop(conv: Conversation, *, max_turns: int, verbose: bool) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "skiff> ")])

    if verbose:
        model = conv.settings.model_string if conv.settings else "?"
        fmt.repl_banner(model, conv.working_dirs[0])

    while True:
        try:
            print(file=sys.stderr)
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        # Only known commands are intercepted; unknown /foo goes to the model.
        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            conv.save()
            dropped = conv.clear()
            fmt.info(f"context cleared ({dropped} messages removed, usage reset)")
        elif cmd == "/compact":
            _repl_compact(conv, cmd_arg)
        elif cmd == "/usage":
            u = conv.usage
            fmt.usage_stats(u.prompt_tokens, u.completion_tokens, u.total_tokens)
        elif cmd == "/context":
            _repl_context(conv)
        elif cmd == "/stream":
            conv.stream = not conv.stream
            fmt.info(f"streaming {'enabled' if conv.stream else 'disabled'}")
        elif cmd == "/permissions":
            fmt.info(conv.gate.summary())
        elif cmd == "/add-dir":
            _repl_add_dir(conv, cmd_arg)
        elif cmd == "/history":
            _repl_history(conv)
        elif cmd == "/resume":
            _repl_resume(conv, cmd_arg)
        elif cmd == "/export":
            _repl_export(conv, cmd_arg)
        elif cmd == "/model":
            _repl_model(conv, cmd_arg)
        elif cmd == "/status":
            _repl_status(conv)
        elif cmd == "/pwd":
            _repl_pwd(conv)
        elif cmd == "/version":
            fmt.info(f"skiff {_version()}")
        else:
            _run_interaction(conv, line, max_turns, verbose)

    conv.save()


if __name__ == "__main__":
    main()
