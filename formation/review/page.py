"""
HTML for the local review page. Every dynamic value is HTML-escaped before substitution.
"""

import html
from string import Template
from urllib.parse import urlparse

ALLOWED_DOCUMENT_SCHEMES = ("http", "https")

_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Review Certificate - $label</title>
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif; margin: 0; background: #f5f7fa; color: #1f2933; }
    header { padding: 16px 24px; background: #ffffff; border-bottom: 1px solid #d9e2ec; }
    header h1 { margin: 0; font-size: 20px; }
    header p { margin: 4px 0 0; color: #52606d; font-size: 14px; }
    main { padding: 16px 24px; }
    iframe { width: 100%; height: 75vh; border: 1px solid #d9e2ec; background: #ffffff; }
    .actions { margin-top: 16px; display: flex; gap: 12px; }
    button { padding: 10px 20px; font-size: 15px; border-radius: 4px; border: none; cursor: pointer; }
    #approve { background: #2ecc71; color: #ffffff; }
    #cancel { background: #e4e7eb; color: #1f2933; }
    button:disabled { opacity: 0.6; cursor: default; }
    #status { margin-top: 12px; font-weight: 600; }
  </style>
</head>
<body>
  <header>
    <h1>$label</h1>
    <p>Review your certificate. Approve to continue to payment, or cancel to make changes.</p>
  </header>
  <main>
    <iframe src="$document_url" title="Certificate preview"></iframe>
    <p><a href="$document_url" target="_blank" rel="noopener noreferrer">Open the document in a new tab</a></p>
    <div class="actions">
      <button id="approve" type="button">Approve &amp; Continue</button>
      <button id="cancel" type="button">Cancel</button>
    </div>
    <div id="status" role="status"></div>
  </main>
  <script>
    function decide(action, doneText) {
      var buttons = document.querySelectorAll("button");
      buttons.forEach(function (b) { b.disabled = true; });
      fetch("/" + action, { method: "POST" })
        .then(function (r) { return r.json(); })
        .then(function () {
          document.getElementById("status").textContent = doneText + " You can close this tab and return to the terminal.";
        })
        .catch(function () {
          document.getElementById("status").textContent = "The review session has ended. Return to the terminal.";
        });
    }
    document.getElementById("approve").addEventListener("click", function () { decide("approve", "Approved."); });
    document.getElementById("cancel").addEventListener("click", function () { decide("cancel", "Cancelled."); });
  </script>
</body>
</html>
""")


def validate_document_url(document_url: str) -> str:
    """Only absolute http(s) URLs may be embedded."""
    parsed = urlparse(document_url or "")
    if parsed.scheme.lower() not in ALLOWED_DOCUMENT_SCHEMES or not parsed.netloc:
        raise ValueError(f"Document URL must be an absolute http(s) URL: {document_url!r}")
    return document_url


def render_review_page(document_url: str, label: str) -> str:
    return _PAGE.substitute(
        document_url=html.escape(document_url, quote=True),
        label=html.escape(label or "", quote=True),
    )
