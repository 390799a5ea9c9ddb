"""
Popup -> opener handshake page.

The callback runs inside the popup. Its response is a page that posts exactly one message
{type, status, ...} to window.opener and then closes itself.
"""
import html
import json

from fastapi.responses import HTMLResponse

from verify_server.config import MESSAGE_TYPE, POPUP_CLOSE_DELAY_MS

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


def script_json(value) -> str:
    """JSON safe to embed inside a <script> element."""
    return (
        json.dumps(value, separators=(",", ":"))
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def success_message(**payload) -> dict:
    return {"type": MESSAGE_TYPE, "status": STATUS_SUCCESS, **payload}


def error_message(error: str, description: str) -> dict:
    return {"type": MESSAGE_TYPE, "status": STATUS_ERROR, "error": error, "errorDescription": description}


def render_handshake(message: dict, target_origin: str | None = None, status_code: int = 200) -> HTMLResponse:
    """Page that delivers message to the opener once, then closes after a short delay."""
    title = "Verification complete" if message.get("status") == STATUS_SUCCESS else "Verification failed"
    text = "Returning to the website..." if message.get("status") == STATUS_SUCCESS else message.get(
        "errorDescription", "Verification failed"
    )
    body = f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <p>{html.escape(text)}</p>
  <script type="application/json" id="verification-result">{script_json(message)}</script>
  <script>
    (function () {{
      var message = JSON.parse(document.getElementById("verification-result").textContent);
      try {{
        if (window.opener && !window.opener.closed) {{
          window.opener.postMessage(message, {script_json(target_origin or "*")});
        }}
      }} catch (e) {{}}
      setTimeout(function () {{ window.close(); }}, {POPUP_CLOSE_DELAY_MS});
    }})();
  </script>
</body>
</html>"""
    return HTMLResponse(
        body,
        status_code=status_code,
        headers={"Cache-Control": "no-store", "Referrer-Policy": "no-referrer"},
    )
