"""Debug script injected into proxied HTML documents.

The script forwards ``console.log/error/warn``, ``window.onerror`` and
unhandled promise rejections to the embedding page via ``postMessage`` so the
host UI can surface runtime errors from inside the preview iframe.
"""

from __future__ import annotations

DEBUG_SCRIPT = """
<script>
  (function () {
    function forward(payload) {
      if (window.parent && window.parent !== window) {
        window.parent.postMessage(payload, '*');
      }
    }
    ['log', 'error', 'warn'].forEach(function (level) {
      var original = console[level];
      console[level] = function () {
        var args = Array.prototype.slice.call(arguments);
        original.apply(console, args);
        forward({
          type: 'console',
          level: level === 'warn' ? 'warning' : level,
          message: args.join(' ')
        });
      };
    });
    window.onerror = function (message, source, lineno, colno) {
      console.error('Runtime Error:', message, 'at', source, 'line', lineno);
      forward({ type: 'preview-error', message: message, source: source, line: lineno, column: colno });
      return true;
    };
    window.addEventListener('unhandledrejection', function (event) {
      console.error('Unhandled Promise Rejection:', event.reason);
      forward({ type: 'preview-error', message: 'Unhandled Promise Rejection: ' + event.reason });
    });
  })();
</script>
"""

_BODY_CLOSE = b"</body>"


def needs_injection(path: str) -> bool:
    """HTML document paths: ``*.html``, ``/`` and anything ending in ``/``."""
    return path.endswith(".html") or path.endswith("/") or path == ""


def inject_html(body: bytes, script: str = DEBUG_SCRIPT) -> bytes:
    """Insert *script* before the last ``</body>``, or append it if there is none."""
    payload = script.encode("utf-8")
    index = body.lower().rfind(_BODY_CLOSE)
    if index == -1:
        return body + payload
    return body[:index] + payload + body[index:]
