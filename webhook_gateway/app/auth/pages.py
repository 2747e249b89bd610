"""
Minimal HTML pages shown to browser callers when sign-in or access fails.

Every interpolated value is HTML-escaped.
"""

from html import escape

from fastapi.responses import HTMLResponse

_PAGE_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        * {{ margin: 0; padding: 0; box-sizing: border-box; }}
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
            background: #f5f7fb;
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            padding: 20px;
        }}
        .container {{
            background: white;
            border-radius: 12px;
            padding: 40px;
            max-width: 500px;
            width: 100%;
            box-shadow: 0 8px 30px rgba(0,0,0,0.08);
            text-align: center;
        }}
        h1 {{
            color: #e74266;
            font-size: 24px;
            margin-bottom: 16px;
        }}
        .message {{
            color: #6b7280;
            font-size: 16px;
            line-height: 1.6;
            margin-bottom: 32px;
        }}
        .button {{
            display: inline-block;
            background: #e74266;
            color: white;
            padding: 14px 32px;
            border-radius: 8px;
            text-decoration: none;
            font-weight: 600;
        }}
        .support {{
            margin-top: 24px;
            padding-top: 24px;
            border-top: 1px solid #e5e7eb;
            color: #9ca3af;
            font-size: 13px;
        }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p class="message">{message}</p>
        {action}
        <div class="support">
            <p>Need help? Contact your system administrator.</p>
        </div>
    </div>
</body>
</html>
"""


def _render(title: str, message: str, action: str, status_code: int) -> HTMLResponse:
    html_content = _PAGE_TEMPLATE.format(title=escape(title), message=escape(message), action=action)
    return HTMLResponse(content=html_content, status_code=status_code)


def render_error_page(
    title: str,
    message: str,
    show_retry: bool = True,
    status_code: int = 400,
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no PII)
        show_retry: Whether to show the "Try again" link to /auth/login
        status_code: HTTP status code

    Returns:
        HTMLResponse with error information
    """
    action = '<a href="/auth/login" class="button">Try again</a>' if show_retry else ""
    return _render(title, message, action, status_code)


def render_access_denied_page(message: str) -> HTMLResponse:
    """403 page for signed-in users outside the allowed group, with a sign-out link."""
    action = '<a href="/auth/logout" class="button">Sign out</a>'
    return _render(
        "Access Denied",
        f"{message} Please contact your administrator to request access.",
        action,
        403,
    )
