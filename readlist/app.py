#!/usr/bin/env python3
"""
A small server-rendered reading list.
"""

import logging
import os
import secrets
import sqlite3
from collections import deque
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from urllib.parse import urlparse

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

from readlist import titles
from readlist.store import (
    STATUSES,
    TYPES,
    ReadingEntry,
    StorageError,
    Store,
    ValidationError,
    normalize_type,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

STATUS_LABELS = {
    "unread": "Unread",
    "to-be-read": "To be read",
    "halfway": "Halfway",
    "read": "Read",
}
MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
]
HTMX_SRC = "https://unpkg.com/htmx.org@1.9.12"

try:
    __version__ = version("readlist")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


_ENV = _read_env_file()


def env(key: str, default: str = "") -> str:
    """Process environment first, then the .env file, then *default*."""
    return (os.environ.get(key) or _ENV.get(key) or default).strip()


def env_flag(key: str, default: str = "0") -> bool:
    return env(key, default).lower() in ("1", "true", "yes", "on")


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=env("READLIST_DATABASE", str(ROOT / "readings.sqlite3")),
    REQUIRE_LOGIN=env_flag("READLIST_REQUIRE_LOGIN"),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env_flag("READLIST_SECURE_COOKIES", "1"),
    TITLE_ENDPOINTS=[
        env("LLAMA_API_URL", titles.DEFAULT_BASE_URL),
        env("LLAMA_API_URL_WINDOWS"),
        env("LLAMA_API_URL_LINUX"),
    ],
    TITLE_MODEL=env("LLAMA_MODEL", titles.DEFAULT_MODEL),
    TITLE_PROBE_TIMEOUT=float(env("TITLE_PROBE_TIMEOUT", str(titles.PROBE_TIMEOUT))),
    TITLE_REQUEST_TIMEOUT=float(
        env("TITLE_REQUEST_TIMEOUT", str(titles.REQUEST_TIMEOUT))
    ),
    TITLE_MAX_ATTEMPTS=int(env("TITLE_MAX_ATTEMPTS", str(titles.MAX_ATTEMPTS))),
    TITLE_RETRY_DELAY=float(env("TITLE_RETRY_DELAY", str(titles.RETRY_DELAY))),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.extensions["title_generator"] = titles.from_config(app.config)


def get_title_generator() -> titles.TitleGenerator:
    return app.extensions["title_generator"]


def render_markdown_html(text: str | None) -> str:
    if not text:
        return ""
    # descriptions are user input: escape first, then let Markdown format
    return markdown.markdown(escape(text, quote=False), extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("href")
def href_filter(url: str | None) -> str:
    """Only http(s) URLs become live links."""
    if not url:
        return "#"
    scheme = urlparse(url).scheme.lower()
    return url if scheme in ("http", "https") else "#"


def link_host(url: str | None) -> str:
    """Return the hostname (sans www) used as the default source label."""
    if not url:
        return ""
    try:
        parsed = urlparse(url if "://" in url else f"//{url}", scheme="https")
        host = parsed.hostname or ""
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.lower()


###############################################################################
# Database helpers
###############################################################################
USER_SCHEMA = """
CREATE TABLE IF NOT EXISTS user (
    id          INTEGER PRIMARY KEY,
    username    TEXT UNIQUE NOT NULL,
    token_hash  TEXT NOT NULL
);
"""
_SCHEMA_READY: set[str] = set()


def _create_tables(db) -> None:
    db.executescript(USER_SCHEMA)
    Store(db).ensure_schema()


def get_db():
    if "db" not in g:
        path = app.config["DATABASE"]
        g.db = sqlite3.connect(path)
        g.db.row_factory = sqlite3.Row
        if path not in _SCHEMA_READY:
            _create_tables(g.db)
            _SCHEMA_READY.add(path)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    _create_tables(db)
    _SCHEMA_READY.add(app.config["DATABASE"])


def get_store() -> Store:
    try:
        return Store(get_db())
    except sqlite3.Error as exc:
        raise StorageError(f"Cannot open database – {exc}") from exc


###############################################################################
# Reader account – one-time login tokens
###############################################################################
TOKEN_MAX_AGE = 60


def _has_account(db) -> bool:
    return db.execute("SELECT 1 FROM user LIMIT 1").fetchone() is not None


def issue_login_token(db, username: str | None = None) -> str:
    """
    Store the hash of a fresh handle and return the signed token for it.

    With *username* the reader account is created; without it the existing
    account gets a new token and the previous one stops working.
    """
    handle = secrets.token_urlsafe(TOKEN_LEN)
    if username is None:
        db.execute("UPDATE user SET token_hash=?", (hash_token(handle),))
    else:
        db.execute(
            "INSERT INTO user (username, token_hash) VALUES (?,?)",
            (username, hash_token(handle)),
        )
    db.commit()
    return signer.sign(handle).decode()


def redeem_login_token(token: str) -> bool:
    """True if *token* is current; a redeemed token is burned straight away."""
    try:
        handle = signer.unsign(token, max_age=TOKEN_MAX_AGE).decode()
    except BadSignature:  # includes SignatureExpired
        return False

    db = get_db()
    row = db.execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    if not row or not verify_token(row["token_hash"], handle):
        return False
    db.execute("UPDATE user SET token_hash=?", (hash_token(secrets.token_hex(16)),))
    db.commit()
    return True


@app.cli.command("init")
@click.option("--username", prompt=True, help="Account name (created if DB empty)")
def cli_init(username: str):
    """Create the tables *and* the reader account."""
    init_db()
    db = get_db()
    if _has_account(db):
        token = issue_login_token(db)
        click.secho("\nAccount already exists – token rotated.", fg="yellow")
    else:
        token = issue_login_token(db, username=username.strip())
        click.secho("\nAccount created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo(f"Paste it into the login form at /login within {TOKEN_MAX_AGE} seconds.")


@app.cli.command("token")
def cli_token():
    """Rotate the one-time login token."""
    db = get_db()
    if not _has_account(db):
        raise click.ClickException("No account yet – run `flask init` first.")
    token = issue_login_token(db)
    click.secho("\nFresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")


@app.cli.command("seed")
def cli_seed():
    """Insert the sample readings into an empty list."""
    init_db()
    added = get_store().seed()
    if added:
        click.secho(f"Inserted {added} sample readings.", fg="green")
    else:
        click.echo("Reading list is not empty – nothing inserted.")


###############################################################################
# Write gate
###############################################################################
class LoginThrottle:
    """Sliding-window hit counter keyed by client address."""

    def __init__(self, max_requests: int, window: int = 60):
        self.max_requests = max_requests
        self.window = window
        self.hits: dict[str, deque] = {}

    def prune(self, now: float) -> None:
        for key in list(self.hits):
            dq = self.hits[key]
            while dq and now - dq[0] > self.window:
                dq.popleft()
            if not dq:
                del self.hits[key]

    def retry_after(self, key: str, now: float | None = None) -> int:
        """Record a hit for *key*: 0 when allowed, else seconds left to wait."""
        now = time() if now is None else now
        self.prune(now)
        dq = self.hits.setdefault(key, deque())
        if len(dq) >= self.max_requests:
            return max(1, int(self.window - (now - dq[0])))
        dq.append(now)
        return 0


login_throttle = LoginThrottle(max_requests=5, window=60)


def throttled(limiter: LoginThrottle):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"
            wait = limiter.retry_after(ip)
            if wait:
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(wait)},
                )
            return view(*args, **kwargs)

        return wrapped

    return decorator


def write_required() -> None:
    """Writes are open unless REQUIRE_LOGIN is on."""
    if app.config["REQUIRE_LOGIN"] and not session.get("logged_in"):
        abort(403)


def _csrf_token() -> str:
    return session.get("csrf", "")


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["status_labels"] = STATUS_LABELS
app.jinja_env.globals["version"] = __version__

SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@app.before_request
def csrf_protect():
    """A signed-in reader must echo the session's CSRF token on every write."""
    if request.method in SAFE_METHODS or not session.get("logged_in"):
        return
    expected = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not expected or not secrets.compare_digest(expected, sent):
        app.logger.warning("CSRF mismatch on %s %s", request.method, request.path)
        abort(403)


@app.after_request
def sec_headers(resp):
    for name, value in SECURITY_HEADERS.items():
        resp.headers.setdefault(name, value)
    return resp


@app.route("/login", methods=["GET", "POST"])
@throttled(login_throttle)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token:
        if redeem_login_token(token):
            session.clear()
            session.permanent = True
            session["logged_in"] = True
            session["csrf"] = secrets.token_hex(16)
            app.logger.info("Login from %s", request.remote_addr)
            return redirect(url_for("homepage"))
        app.logger.warning("Rejected login token from %s", request.remote_addr)

    return render_template_string(TEMPL_LOGIN, title="Sign in")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("homepage"))


###############################################################################
# Reading list
###############################################################################
def status_counts() -> dict[str, int]:
    """Per-status counters for the home view; zeros if the store is down."""
    try:
        store = get_store()
        return {s: store.count_by_status(s) for s in STATUSES}
    except StorageError:
        app.logger.exception("Cannot count readings")
        return {s: 0 for s in STATUSES}


def render_list(readings: list[ReadingEntry]) -> str:
    return render_template_string(TEMPL_READING_LIST, readings=readings)


@app.route("/")
def homepage():
    counts = status_counts()
    return render_template_string(
        TEMPL_INDEX,
        title="Reading list",
        counts=counts,
        all_count=sum(counts.values()),
        types=TYPES,
        statuses=STATUSES,
    )


@app.route("/getReadingList", methods=["GET"])
def fetch_readings():
    status = request.args.get("status", "")
    store = get_store()
    if status in ("", "all"):
        readings = store.list_all()
    else:
        readings = store.list_by_status(status)
    return render_list(readings)


@app.route("/addReading", methods=["POST"])
def add_reading():
    write_required()
    url = request.form.get("url", "").strip()
    if not url:
        raise ValidationError("URL is required")
    kind = normalize_type(request.form.get("type"))
    description = request.form.get("description", "").strip()

    title = request.form.get("title", "").strip()
    if not title:
        title = get_title_generator().generate(description)

    store = get_store()
    entry_id = store.create(
        ReadingEntry(
            url=url,
            title=title,
            description=description,
            type=kind,
            source=request.form.get("source", "").strip() or link_host(url),
        )
    )
    app.logger.info("Added reading %s (%s)", entry_id, url)
    return render_list(store.list_all())


@app.route("/newReadingForm")
def new_reading_form():
    return render_template_string(TEMPL_ADD_FORM, types=TYPES)


@app.route("/getReadingUpdateForm/<entry_id>")
def edit_reading_form(entry_id):
    # TODO: wire a save action once Store grows an update operation
    entry = None
    if entry_id.isdecimal():
        try:
            entry = get_store().get(int(entry_id))
        except StorageError:
            app.logger.exception("Cannot load reading %s for editing", entry_id)
    return render_template_string(
        TEMPL_EDIT_FORM, entry_id=entry_id, entry=entry, types=TYPES, statuses=STATUSES
    )


@app.route("/readings/<int:entry_id>/delete", methods=["DELETE"])
def delete_reading(entry_id):
    write_required()
    store = get_store()
    if store.delete(entry_id):
        app.logger.info("Deleted reading %s", entry_id)
    return render_list(store.list_all())


###############################################################################
# Errors
###############################################################################
@app.errorhandler(ValidationError)
def validation_failed(exc):
    return render_template_string(TEMPL_FLASH, message=str(exc)), 400


@app.errorhandler(StorageError)
def storage_failed(exc):
    app.logger.error(
        "Storage failure on %s %s", request.method, request.path, exc_info=exc
    )
    return render_template_string(
        TEMPL_FLASH, message="The reading list is unavailable – please try again."
    ), 500


@app.errorhandler(404)
def not_found(exc):
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'Reading list' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<script src="{{ htmx_src }}"></script>
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:42em;margin:auto;padding:13px;line-height:1.5;color:#c9c9c9;background:#222}
a{color:#fff}a:hover{color:#c9c9c9}
input,textarea,select{width:100%;box-sizing:border-box;margin-bottom:10px;padding:6px 10px;color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
button[disabled]{opacity:.5;cursor:default}
.status-nav{display:flex;gap:1rem;flex-wrap:wrap;margin-bottom:1rem}
.status-nav a{cursor:pointer;text-decoration:underline dotted}
.readings{list-style:none;padding:0}
.reading{border-bottom:1px solid #4a4a4a;padding:.75rem 0}
.reading small{color:#888}
.pill{display:inline-block;padding:.05em .6em;margin-left:.3em;background:#444;border-radius:1em;font-size:.75em}
.host{font-size:.8em;color:#888;margin-left:.35em}
.flash{padding:.5rem 1rem;border-left:4px solid #c33;background:#331414;color:#f9c0c0}
</style>
<body hx-headers='{"X-CSRFToken": "{{ csrf_token() }}"}'>
<nav style="display:flex;justify-content:space-between;margin-bottom:1rem;">
  <a href="{{ url_for('homepage') }}" style="font-weight:700;text-decoration:none;">Reading list</a>
  {% if session.get('logged_in') %}
    <a href="{{ url_for('logout') }}">Sign out</a>
  {% elif config['REQUIRE_LOGIN'] %}
    <a href="{{ url_for('login') }}">Sign in</a>
  {% endif %}
</nav>
<div id="flash"></div>
"""

TEMPL_EPILOG = """
<script>
document.body.addEventListener("htmx:responseError", (evt) => {
  document.getElementById("flash").innerHTML = evt.detail.xhr.responseText;
});
</script>
<footer style="margin-top:3rem;font-size:.75em;color:#666;">readlist {{ version }}</footer>
</body>
</html>
"""


@app.context_processor
def _template_defaults():
    return {"htmx_src": HTMX_SRC}


TEMPL_INDEX = wrap("""
<h1>Reading list</h1>
<nav class="status-nav">
  <a hx-get="{{ url_for('fetch_readings', status='all') }}" hx-target="#reading-list">All ({{ all_count }})</a>
  {% for s in statuses %}
  <a hx-get="{{ url_for('fetch_readings', status=s) }}" hx-target="#reading-list">{{ status_labels[s] }} ({{ counts[s] }})</a>
  {% endfor %}
</nav>
<button hx-get="{{ url_for('new_reading_form') }}" hx-target="#form-slot">Add reading</button>
<div id="form-slot"></div>
<div id="reading-list" hx-get="{{ url_for('fetch_readings', status='all') }}" hx-trigger="load"></div>
""")

TEMPL_READING_LIST = """
{% if readings %}
<ul class="readings">
  {% for r in readings %}
  <li class="reading" id="reading-{{ r.id }}">
    <a href="{{ r.url|href }}" target="_blank" rel="noopener">{{ r.title or r.url }}</a>
    {% if r.source %}<span class="host">{{ r.source }}</span>{% endif %}
    <span class="pill">{{ r.type }}</span>
    <span class="pill">{{ status_labels.get(r.status, r.status) }}</span>
    {% if r.description %}<div class="desc">{{ r.description|md }}</div>{% endif %}
    <small>{{ r.add_date }} {{ r.add_time }}</small>
    <button hx-get="{{ url_for('edit_reading_form', entry_id=r.id) }}" hx-target="#form-slot">Edit</button>
    <button hx-delete="{{ url_for('delete_reading', entry_id=r.id) }}"
            hx-target="#reading-list"
            hx-confirm="Delete this reading?">Delete</button>
  </li>
  {% endfor %}
</ul>
{% else %}
<p class="empty">Nothing here yet.</p>
{% endif %}
"""

TEMPL_ADD_FORM = """
<form hx-post="{{ url_for('add_reading') }}" hx-target="#reading-list"
      hx-on::after-request="if(event.detail.successful) this.remove()">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="url">URL</label>
  <input id="url" name="url" type="url" required>
  <label for="title">Title <small>(leave blank to generate one)</small></label>
  <input id="title" name="title">
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="3"></textarea>
  <label for="type">Type</label>
  <select id="type" name="type">
    {% for t in types %}<option value="{{ t }}">{{ t|capitalize }}</option>{% endfor %}
  </select>
  <label for="source">Source</label>
  <input id="source" name="source" placeholder="defaults to the site name">
  <button type="submit">Save</button>
</form>
"""

TEMPL_EDIT_FORM = """
<form id="edit-reading-{{ entry_id }}" onsubmit="return false;">
  <p class="flash" style="border-color:#888;background:#2a2a2a;color:#c9c9c9;">
    Editing reading #{{ entry_id }} – saving changes is not supported yet.
  </p>
  <label for="url">URL</label>
  <input id="url" name="url" value="{{ entry.url if entry else '' }}">
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ entry.title if entry else '' }}">
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="3">{{ entry.description if entry else '' }}</textarea>
  <label for="type">Type</label>
  <select id="type" name="type">
    {% for t in types %}
    <option value="{{ t }}" {% if entry and entry.type == t %}selected{% endif %}>{{ t|capitalize }}</option>
    {% endfor %}
  </select>
  <label for="status">Status</label>
  <select id="status" name="status">
    {% for s in statuses %}
    <option value="{{ s }}" {% if entry and entry.status == s %}selected{% endif %}>{{ status_labels[s] }}</option>
    {% endfor %}
  </select>
  <button type="submit" disabled>Save</button>
</form>
"""

TEMPL_FLASH = """<p class="flash">{{ message }}</p>"""

TEMPL_LOGIN = wrap("""
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password">
  <button type="submit">Sign in</button>
</form>
""")

TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('homepage') }}">Back to the reading list</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    logging.basicConfig(
        level=env("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(port=int(env("PORT", "8080")), debug=env_flag("FLASK_DEBUG"))
