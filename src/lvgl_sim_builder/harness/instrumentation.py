"""Console-capture instrumentation injected into the simulator page."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CONSOLE_RELAY_PATH = "/__console"

CONSOLE_CAPTURE_SNIPPET = """
<script>
(function() {
  var original = {
    log: console.log,
    error: console.error,
    warn: console.warn,
    info: console.info
  };

  function flatten(args) {
    return Array.prototype.slice.call(args).map(function(arg) {
      if (typeof arg === 'object' && arg !== null) {
        try { return JSON.stringify(arg); }
        catch (e) { return String(arg); }
      }
      return String(arg);
    }).join(' ');
  }

  function relay(level, args) {
    var payload = { type: 'console', level: level, message: flatten(args) };
    if (window.parent && window.parent !== window) {
      window.parent.postMessage(payload, '*');
    }
    try {
      var body = JSON.stringify(payload);
      if (navigator.sendBeacon) {
        navigator.sendBeacon('__RELAY_PATH__', new Blob([body], { type: 'application/json' }));
      } else {
        fetch('__RELAY_PATH__', { method: 'POST', body: body, keepalive: true });
      }
    } catch (e) {}
  }

  ['log', 'error', 'warn', 'info'].forEach(function(level) {
    console[level] = function() {
      original[level].apply(console, arguments);
      relay(level, arguments);
    };
  });

  window.addEventListener('error', function(e) {
    relay('error', [e.message + ' at ' + e.filename + ':' + e.lineno]);
  });
})();
</script>
""".replace("__RELAY_PATH__", CONSOLE_RELAY_PATH)

CONSOLE_LEVELS = frozenset({"log", "error", "warn", "info"})


class ConsoleMessageError(ValueError):
    """Relayed payload does not have the console message shape."""


@dataclass(frozen=True, slots=True)
class ConsoleMessage:
    """One console call or uncaught error captured in the page."""

    level: str
    message: str


def inject_instrumentation(html: str) -> str:
    """Insert the capture snippet before the first ``</head>``; no head, no change."""

    marker = "</head>"
    index = html.find(marker)
    if index < 0:
        return html
    return html[:index] + CONSOLE_CAPTURE_SNIPPET + html[index:]


def parse_console_message(payload: Any) -> ConsoleMessage:
    """Accept exactly ``{"type": "console", "level": str, "message": str}``."""

    if not isinstance(payload, dict) or payload.get("type") != "console":
        raise ConsoleMessageError("Expected an object with type 'console'.")
    level = payload.get("level")
    message = payload.get("message")
    if not isinstance(level, str) or not isinstance(message, str):
        raise ConsoleMessageError("Console message requires string 'level' and 'message'.")
    return ConsoleMessage(level=level, message=message)
