"""Playwright actuator that attaches to the editor over the Chrome DevTools Protocol.

The editor must be started with ``--remote-debugging-port`` somewhere in
:data:`DEFAULT_PORTS`. Host and port range can be overridden with the
``YOKE_CDP_HOST`` and ``YOKE_CDP_PORTS`` (``"9000-9030"``) environment
variables.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Sequence
from typing import Any

from yoke.actuator import Actuator, register_actuator
from yoke.models import model_label
from yoke.schemas import ModelId

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORTS: tuple[int, ...] = tuple(range(9000, 9031))
DEFAULT_TARGET_HINT = "antigravity"
POLL_INTERVAL_SECONDS = 2.0
STABLE_POLLS = 3
CONNECT_TIMEOUT_MS = 2_000
ACCEPT_LABEL_RE = re.compile(r"(accept|approve|run)( all| command)?")

# ── Page scripts ─────────────────────────────────────────────────

_INJECT_JS = """
(prompt) => {
  const textarea = document.querySelector(
    'textarea[placeholder*="message"], textarea[data-testid="chat-input"], .chat-input textarea');
  if (!textarea) return { success: false, error: 'No textarea found' };
  textarea.value = prompt;
  textarea.dispatchEvent(new Event('input', { bubbles: true }));
  const sendBtn = document.querySelector(
    'button[type="submit"], button[aria-label*="send"], button[data-testid="send-button"]');
  if (sendBtn) {
    sendBtn.click();
    return { success: true };
  }
  textarea.dispatchEvent(new KeyboardEvent('keydown', { key: 'Enter', bubbles: true }));
  return { success: true };
}
"""

_LAST_RESPONSE_JS = """
() => {
  const messages = document.querySelectorAll(
    '[data-message-author="assistant"], .message.assistant, .ai-response');
  if (messages.length === 0) return { count: 0, text: '' };
  return { count: messages.length, text: messages[messages.length - 1].textContent || '' };
}
"""

_IS_GENERATING_JS = """
() => document.querySelector('.generating, .loading, [data-loading="true"]') !== null
"""

_OPEN_MODEL_PICKER_JS = """
() => {
  const picker = document.querySelector(
    '[data-testid="model-selector"], .model-dropdown, button[aria-label*="model"]');
  if (!picker) return false;
  picker.click();
  return true;
}
"""

_CHOOSE_MODEL_JS = """
(label) => {
  const wanted = label.toLowerCase();
  const options = document.querySelectorAll('[role="option"], .model-option, li[data-model]');
  for (const opt of options) {
    if ((opt.textContent || '').toLowerCase().includes(wanted)) {
      opt.click();
      return true;
    }
  }
  return false;
}
"""

_BUTTON_LABELS_JS = """
() => Array.from(document.querySelectorAll('button'), (btn) => btn.textContent || '')
"""

_CLICK_BUTTONS_JS = """
(indices) => {
  const buttons = document.querySelectorAll('button');
  let clicked = 0;
  for (const i of indices) {
    if (buttons[i]) {
      buttons[i].click();
      clicked++;
    }
  }
  return clicked;
}
"""


def is_accept_label(text: str) -> bool:
    """True for button labels such as "Accept", "Run" or "Approve all"."""
    label = " ".join(text.lower().split())
    return ACCEPT_LABEL_RE.fullmatch(label) is not None


def _read_last_message(result: Any) -> tuple[int, str]:
    if not isinstance(result, dict):
        return 0, ""
    return int(result.get("count") or 0), result.get("text") or ""


def parse_ports(value: str | None) -> tuple[int, ...]:
    """Parse ``"9000-9030"`` or ``"9222,9229"`` into a port tuple."""
    text = (value or "").strip()
    if not text:
        return DEFAULT_PORTS
    ports: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            low, _, high = part.partition("-")
            ports.extend(range(int(low), int(high) + 1))
        else:
            ports.append(int(part))
    return tuple(ports) or DEFAULT_PORTS


class CDPActuator(Actuator):
    """Drives the assistant's chat panel inside the editor's Chromium window."""

    name = "cdp"

    def __init__(
        self,
        *,
        host: str | None = None,
        ports: Sequence[int] | None = None,
        target_hint: str = DEFAULT_TARGET_HINT,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.host = host or os.environ.get("YOKE_CDP_HOST", DEFAULT_HOST)
        self.ports = tuple(ports) if ports else parse_ports(os.environ.get("YOKE_CDP_PORTS"))
        self.target_hint = target_hint.lower()
        self.poll_interval = poll_interval
        self.port: int | None = None
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None
        self._seen_messages = 0

    # ── Connection ───────────────────────────────────────────────

    async def connect(self) -> bool:
        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise RuntimeError(
                "Playwright is required for the CDP actuator. Install with:\n"
                "  pip install 'yoke[cdp]'"
            ) from exc

        await self.close()
        self._playwright = await async_playwright().start()
        for port in self.ports:
            endpoint = f"http://{self.host}:{port}"
            try:
                browser = await self._playwright.chromium.connect_over_cdp(
                    endpoint, timeout=CONNECT_TIMEOUT_MS
                )
            except Exception as exc:
                logger.debug("No CDP endpoint at %s: %s", endpoint, exc)
                continue
            page = await self._find_target_page(browser)
            if page is None:
                await browser.close()
                continue
            self._browser = browser
            self._page = page
            self.port = port
            logger.info("Connected to assistant on port %d", port)
            return True

        logger.warning("Could not find the assistant on %s ports %s", self.host, _port_span(self.ports))
        await self.close()
        return False

    async def _find_target_page(self, browser: Any) -> Any:
        for context in browser.contexts:
            for page in context.pages:
                try:
                    title = (await page.title()).lower()
                except Exception:
                    title = ""
                if self.target_hint in page.url.lower() or self.target_hint in title:
                    return page
        return None

    def is_connected(self) -> bool:
        if self._page is None:
            return False
        if self._browser is not None and not self._browser.is_connected():
            return False
        return not self._page.is_closed()

    async def close(self) -> None:
        self._page = None
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception:
                logger.debug("Error closing CDP browser", exc_info=True)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    # ── Chat actions ─────────────────────────────────────────────

    async def inject(self, prompt: str) -> bool:
        if not self.is_connected() and not await self.connect():
            return False
        self._seen_messages, _ = _read_last_message(await self._page.evaluate(_LAST_RESPONSE_JS))
        result = await self._page.evaluate(_INJECT_JS, prompt)
        if isinstance(result, dict) and result.get("success"):
            logger.info("Prompt injected (%d chars)", len(prompt))
            return True
        error = result.get("error") if isinstance(result, dict) else result
        logger.warning("Inject failed: %s", error)
        return False

    async def wait_for_response(self, timeout_seconds: float) -> str:
        """Poll for a new assistant message until it stops changing.

        Only messages that appeared after the last :meth:`inject` count. The
        reply is finished once it has been identical for :data:`STABLE_POLLS`
        polls and no generating indicator is visible. Returns ``""`` when no
        reply settles before the deadline.
        """
        if not self.is_connected():
            return ""
        deadline = time.monotonic() + timeout_seconds
        last = ""
        stable = 0
        while time.monotonic() < deadline:
            count, response = _read_last_message(await self._page.evaluate(_LAST_RESPONSE_JS))
            if count <= self._seen_messages:
                response = ""
            if response and response == last:
                stable += 1
                if stable >= STABLE_POLLS and not await self._page.evaluate(_IS_GENERATING_JS):
                    self._seen_messages = count
                    return response
            else:
                stable = 0
                last = response
            await asyncio.sleep(self.poll_interval)
        logger.warning("No settled response within %.0fs", timeout_seconds)
        return ""

    async def switch_model(self, model_id: ModelId) -> bool:
        if not self.is_connected():
            return False
        if not await self._page.evaluate(_OPEN_MODEL_PICKER_JS):
            logger.warning("Model selector not found")
            return False
        await asyncio.sleep(0.5)
        label = model_label(model_id)
        if await self._page.evaluate(_CHOOSE_MODEL_JS, label):
            logger.info("Selected model %s", label)
            return True
        logger.warning("Model option %r not found", label)
        return False

    async def click_pending_acceptance(self) -> int:
        if not self.is_connected():
            return 0
        labels = await self._page.evaluate(_BUTTON_LABELS_JS) or []
        wanted = [i for i, label in enumerate(labels) if is_accept_label(label)]
        if not wanted:
            return 0
        count = int(await self._page.evaluate(_CLICK_BUTTONS_JS, wanted) or 0)
        if count:
            logger.info("Clicked %d accept buttons", count)
        return count


def _port_span(ports: Sequence[int]) -> str:
    if not ports:
        return "(none)"
    return f"{min(ports)}-{max(ports)}"


register_actuator("cdp", CDPActuator)
