"""
Browser side of the handshake.

GET /verify-age/opener.js: helper for the embedding page. Opens the popup and waits for one result message.
GET /verify-age/{widget_id}: popup bootstrap page. Calls init, then navigates to the provider.
"""
from fastapi import APIRouter
from fastapi.responses import HTMLResponse, Response

from verify_server.config import MESSAGE_TYPE, OPENER_TIMEOUT_MS, PUBLIC_BASE_URL
from verify_server.handshake import error_message, render_handshake, script_json
from verify_server.widgets import parse_origin

router = APIRouter()

_OPENER_JS = """(function (global) {
  var SERVICE_ORIGIN = %(service_origin)s;
  var MESSAGE_TYPE = %(message_type)s;
  var TIMEOUT_MS = %(timeout_ms)s;

  function recordCompletion(widgetId, visitorId, result) {
    return fetch(SERVICE_ORIGIN + "/api/verify-age/complete", {
      method: "POST",
      headers: {"Content-Type": "application/json"},
      body: JSON.stringify({
        widgetId: widgetId,
        visitorId: visitorId,
        verificationOutcome: result.isAdult ? "verified_adult" : "blocked_minor",
        token: result.token
      })
    }).then(function (response) {
      return response.json().then(function (data) {
        result.recorded = response.ok;
        result.recordedExpiresAt = data.expiresAt || null;
        return result;
      });
    }, function () {
      result.recorded = false;
      return result;
    });
  }

  function verifyAge(options) {
    var url = SERVICE_ORIGIN + "/verify-age/" + encodeURIComponent(options.widgetId) +
      "?origin=" + encodeURIComponent(global.location.origin);
    var popup = global.open(url, "age-verification", "width=480,height=720");
    if (!popup) {
      return Promise.resolve({type: MESSAGE_TYPE, status: "error", error: "popup_blocked",
        errorDescription: "Please allow popups to verify your age."});
    }
    var waiting = new Promise(function (resolve) {
      var settled = false;
      var timer = null;

      function finish(result) {
        if (settled) { return; }
        settled = true;
        clearTimeout(timer);
        global.removeEventListener("message", onMessage);
        global.removeEventListener("focus", onFocus);
        resolve(result);
      }
      function onMessage(event) {
        if (event.origin !== SERVICE_ORIGIN || event.source !== popup) { return; }
        var data = event.data;
        if (!data || data.type !== MESSAGE_TYPE) { return; }
        finish(data);
      }
      function onFocus() {
        // Give an in-flight message a moment to arrive before treating the close as abandonment.
        setTimeout(function () {
          if (popup.closed) { finish({type: MESSAGE_TYPE, status: "not_completed", reason: "closed"}); }
        }, 500);
      }
      global.addEventListener("message", onMessage);
      global.addEventListener("focus", onFocus);
      timer = setTimeout(function () {
        finish({type: MESSAGE_TYPE, status: "not_completed", reason: "timeout"});
      }, TIMEOUT_MS);
    });
    return waiting.then(function (result) {
      if (result.status === "success" && options.visitorId) {
        return recordCompletion(options.widgetId, options.visitorId, result);
      }
      return result;
    });
  }

  global.AgeVerification = {verifyAge: verifyAge};
})(window);
"""


@router.get("/verify-age/opener.js")
def opener_script():
    """Script for third-party pages embedding the widget."""
    body = _OPENER_JS % {
        "service_origin": script_json(PUBLIC_BASE_URL),
        "message_type": script_json(MESSAGE_TYPE),
        "timeout_ms": int(OPENER_TIMEOUT_MS),
    }
    return Response(
        body,
        media_type="application/javascript",
        headers={"Cache-Control": "public, max-age=300"},
    )


@router.get("/verify-age/{widget_id}", response_class=HTMLResponse)
def bootstrap_page(widget_id: str, origin: str | None = None):
    """
    Popup entry point. Starts the flow for widget_id and navigates to the provider.
    On failure the visitor can retry; closing reports one error to the opener.
    """
    opener_origin = parse_origin(origin) if origin else None
    if origin and opener_origin is None:
        # Never start an unbound flow when the opener asked for a binding
        return render_handshake(
            error_message("invalid_origin", "The page that opened verification is not a valid web origin."),
            status_code=400,
        )
    config = {
        "widgetId": widget_id,
        "openerOrigin": opener_origin,
        "initUrl": "/api/verify-age/init",
        "messageType": MESSAGE_TYPE,
    }
    body = f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>Age verification</title></head>
<body>
  <h1>Age verification</h1>
  <p id="status">Connecting to DigiLocker...</p>
  <p id="actions" hidden>
    <button type="button" id="retry">Try again</button>
    <button type="button" id="close">Close</button>
  </p>
  <script type="application/json" id="bootstrap-config">{script_json(config)}</script>
  <script>
    (function () {{
      var config = JSON.parse(document.getElementById("bootstrap-config").textContent);
      var statusEl = document.getElementById("status");
      var actionsEl = document.getElementById("actions");
      var lastError = {{error: "not_started", errorDescription: "Verification was not started."}};

      function start() {{
        actionsEl.hidden = true;
        statusEl.textContent = "Connecting to DigiLocker...";
        var body = {{widgetId: config.widgetId}};
        if (config.openerOrigin) {{ body.openerOrigin = config.openerOrigin; }}
        fetch(config.initUrl, {{
          method: "POST",
          headers: {{"Content-Type": "application/json"}},
          body: JSON.stringify(body)
        }}).then(function (response) {{
          return response.json().then(function (data) {{
            if (!response.ok || !data.authUrl) {{
              var detail = data.detail || {{}};
              throw {{error: detail.error || "init_failed",
                      errorDescription: detail.error_description || "Could not start verification."}};
            }}
            statusEl.textContent = "Redirecting to DigiLocker...";
            window.location.href = data.authUrl;
          }});
        }}).catch(function (err) {{
          lastError = (err && err.error) ? err : {{error: "init_failed", errorDescription: "Could not start verification."}};
          statusEl.textContent = lastError.errorDescription;
          actionsEl.hidden = false;
        }});
      }}

      document.getElementById("retry").addEventListener("click", start);
      document.getElementById("close").addEventListener("click", function () {{
        if (window.opener && !window.opener.closed) {{
          window.opener.postMessage({{type: config.messageType, status: "error",
            error: lastError.error, errorDescription: lastError.errorDescription}},
            config.openerOrigin || "*");
        }}
        window.close();
      }});
      start();
    }})();
  </script>
</body>
</html>"""
    return HTMLResponse(body, headers={"Cache-Control": "no-store", "X-Robots-Tag": "noindex"})
