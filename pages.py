"""
pages.py: login and consent pages shown while a request awaits interaction.
"""

import html as html_mod

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .client { color: #ff6b9d; font-weight: 600; }
        .perms { background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem; }
        .perms li { margin: 0.3rem 0; }
        .prompt { color: #ff4444; font-size: 0.9rem; }
        label { display: block; font-size: 0.9rem; color: #aaa; margin-top: 0.8rem; }
        input[type=text], input[type=password] { width: 100%; padding: 0.6rem;
            border: 1px solid #2a2a4a; border-radius: 6px; background: #12122a;
            color: #e0e0e0; font-size: 1rem; margin-top: 0.4rem; box-sizing: border-box; }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        button { flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }
        .approve { background: #00d4ff; color: #0a0a1a; }
        .approve:hover { background: #00b8e6; }
        .deny { background: #2a2a4a; color: #e0e0e0; }
        .deny:hover { background: #3a3a5a; }
"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>ticketgate | {html_mod.escape(title)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
{body}
    </div>
</body>
</html>"""


def login_page(client_name: str = "Client", prompt: str = "") -> str:
    safe_name = html_mod.escape(client_name)
    prompt_html = f'<p class="prompt">{html_mod.escape(prompt)}</p>' if prompt else ""
    return _page("Login", f"""        <h1>Login to {safe_name}</h1>
        <p><span class="client">{safe_name}</span> is asking you to sign in.</p>
        <form method="POST" action="/login">
            <label for="username">Username</label>
            <input type="text" id="username" name="username" autocomplete="username" required>
            <label for="password">Password</label>
            <input type="password" id="password" name="password"
                autocomplete="current-password" required>
            <div class="buttons">
                <button type="submit" class="approve">Login</button>
            </div>
        </form>
        <form method="POST" action="/auth/decision">
            <input type="hidden" name="decision" value="deny">
            <div class="buttons">
                <button type="submit" class="deny">Deny</button>
            </div>
        </form>
        {prompt_html}""")


def consent_page(username: str, client_name: str = "Client",
                 scopes: tuple[str, ...] = ()) -> str:
    safe_user = html_mod.escape(username)
    safe_name = html_mod.escape(client_name)
    if scopes:
        items = "\n".join(f"                <li>{html_mod.escape(s)}</li>" for s in scopes)
        perms = f"""        <div class="perms">
            <strong>Requested scopes:</strong>
            <ul>
{items}
            </ul>
        </div>"""
    else:
        perms = ""
    return _page("Authorize", f"""        <h1>Welcome {safe_user}</h1>
        <p><span class="client">{safe_name}</span> wants access to your account.</p>
{perms}
        <form method="POST" action="/auth/decision">
            <div class="buttons">
                <button type="submit" name="decision" value="deny" class="deny">Deny</button>
                <button type="submit" name="decision" value="allow" class="approve">Allow</button>
            </div>
        </form>""")
