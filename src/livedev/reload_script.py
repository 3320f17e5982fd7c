"""Client-side reload script and its injection into HTML pages."""

import json
import re
from typing import Optional

# Sentinel attribute identifying an injected script block.
RELOAD_MARKER = "data-livedev-reload"

# Path the reload client connects to on the socket-channel listener.
RELOAD_SOCKET_PATH = "/__livedev"

MAX_RECONNECT_ATTEMPTS = 5

_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)

_TOAST_FUNCTIONS = """
    var overlay = null;
    function createOverlay() {
        if (overlay) return overlay;
        overlay = document.createElement('div');
        overlay.id = 'livedev-overlay';
        overlay.style.cssText = 'position: fixed; top: 20px; right: 20px; z-index: 999999; ' +
            'font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; ' +
            'font-size: 14px; pointer-events: none;';
        document.body.appendChild(overlay);
        return overlay;
    }

    function dismiss(toast) {
        toast.style.opacity = '0';
        setTimeout(function () { toast.remove(); }, 300);
    }

    function notify(message, kind, duration) {
        kind = kind || 'info';
        duration = duration || 3000;
        if (!document.body) {
            console.log('[livedev] ' + message);
            return;
        }
        var toast = document.createElement('div');
        var background = kind === 'error' ? '#e74c3c' : kind === 'success' ? '#27ae60' : '#3498db';
        toast.style.cssText = 'background: ' + background + '; color: white; padding: 12px 16px; ' +
            'border-radius: 6px; margin-bottom: 8px; box-shadow: 0 4px 12px rgba(0,0,0,0.15); ' +
            'pointer-events: auto; cursor: pointer; transition: opacity 0.3s ease; ' +
            'max-width: 300px; word-wrap: break-word;';
        toast.textContent = message;
        toast.addEventListener('click', function () { dismiss(toast); });
        createOverlay().appendChild(toast);
        setTimeout(function () {
            if (toast.parentNode) dismiss(toast);
        }, duration);
    }
"""

_CONSOLE_FUNCTIONS = """
    function notify(message, kind) {
        kind = kind || 'info';
        console.log('[livedev] [' + kind.toUpperCase() + '] ' + message);
    }
"""

_CLIENT_TEMPLATE = """
(function () {
    'use strict';
    if (window.__livedev) return;
    window.__livedev = true;

    var SOCKET_PORT = __SOCKET_PORT__;
    var SOCKET_PATH = __SOCKET_PATH__;
    var MAX_ATTEMPTS = __MAX_ATTEMPTS__;
    var BASE_DELAY = 1000;

    var ws = null;
    var attempts = 0;
    var gaveUp = false;
__NOTIFY__
    function socketUrl() {
        var scheme = window.location.protocol === 'https:' ? 'wss:' : 'ws:';
        var port = SOCKET_PORT || window.location.port;
        return scheme + '//' + window.location.hostname + (port ? ':' + port : '') + SOCKET_PATH;
    }

    function isOpen() {
        return ws && ws.readyState === WebSocket.OPEN;
    }

    function send(message) {
        if (!isOpen()) return false;
        ws.send(JSON.stringify(message));
        return true;
    }

    var collab = {
        docId: null,
        userId: null,
        state: {},
        _onState: null,
        _onEdit: null,
        _onCursor: null,
        _onComment: null,
        _envelope: function (type, extra) {
            var message = { channel: 'collab', type: type, docId: this.docId, userId: this.userId };
            for (var key in extra) message[key] = extra[key];
            return message;
        },
        connect: function (docId, userId) {
            this.docId = docId;
            this.userId = userId;
            if (!send(this._envelope('get-state', {}))) {
                notify('Collab: not connected to server', 'error', 3000);
            }
        },
        sendEdit: function (content) { send(this._envelope('doc-sync', { content: content })); },
        sendCursor: function (cursor) { send(this._envelope('cursor-sync', { cursor: cursor })); },
        addComment: function (comment) { send(this._envelope('comment-add', { comment: comment })); },
        removeComment: function (comment) { send(this._envelope('comment-remove', { comment: comment })); },
        onState: function (cb) { this._onState = cb; },
        onEdit: function (cb) { this._onEdit = cb; },
        onCursor: function (cb) { this._onCursor = cb; },
        onComment: function (cb) { this._onComment = cb; }
    };
    window.liveCollab = collab;

    function handleCollab(data) {
        // the server relays every document to every client
        if (data.docId !== collab.docId) return;
        if (data.type === 'state') {
            collab.state = data;
            if (collab._onState) collab._onState(data);
        } else if (data.type === 'doc-sync') {
            if (collab._onEdit) collab._onEdit(data);
        } else if (data.type === 'cursor-sync') {
            if (collab._onCursor) collab._onCursor(data);
        } else if (data.type === 'comment-add' || data.type === 'comment-remove') {
            if (collab._onComment) collab._onComment(data);
        }
    }

    function handleMessage(event) {
        var data;
        try {
            data = JSON.parse(event.data);
        } catch (error) {
            console.error('[livedev] Failed to parse message:', error);
            return;
        }
        if (!data || typeof data !== 'object') return;
        if (data.channel === 'collab') {
            handleCollab(data);
        } else if (data.type === 'reload') {
            notify('Reloading... (' + data.file + ')', 'info', 2000);
            setTimeout(function () { window.location.reload(); }, 100);
        }
    }

    function connect() {
        if (isOpen()) return;
        try {
            ws = new WebSocket(socketUrl());
        } catch (error) {
            notify('Live reload connection failed: ' + error, 'error', 5000);
            return;
        }

        ws.onopen = function () {
            attempts = 0;
            gaveUp = false;
            window.liveServerWebSocket = ws;
            window.liveServerStatus = 'connected';
            notify('Connected to live server', 'success', 2000);
        };

        ws.onmessage = handleMessage;

        ws.onclose = function () {
            window.liveServerWebSocket = null;
            window.liveServerStatus = 'disconnected';
            if (attempts < MAX_ATTEMPTS) {
                attempts++;
                notify('Reconnecting... (attempt ' + attempts + ')', 'info', 2000);
                setTimeout(connect, BASE_DELAY * attempts);
            } else if (!gaveUp) {
                gaveUp = true;
                notify('Connection lost. Please refresh the page.', 'error', 5000);
            }
        };

        ws.onerror = function () {
            notify('Live reload connection error', 'error', 3000);
        };
    }

    window.liveServerStatus = 'disconnected';

    if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', connect);
    } else {
        connect();
    }

    document.addEventListener('visibilitychange', function () {
        if (!document.hidden && !isOpen()) {
            attempts = 0;
            connect();
        }
    });
})();
"""


def reload_client_js(show_overlay: bool = True, socket_port: Optional[int] = None) -> str:
    """Render the reload client's JavaScript source."""
    notify = _TOAST_FUNCTIONS if show_overlay else _CONSOLE_FUNCTIONS
    return (
        _CLIENT_TEMPLATE.replace("__SOCKET_PORT__", json.dumps(socket_port))
        .replace("__SOCKET_PATH__", json.dumps(RELOAD_SOCKET_PATH))
        .replace("__MAX_ATTEMPTS__", str(MAX_RECONNECT_ATTEMPTS))
        .replace("__NOTIFY__", notify)
    )


def inject_reload_script(
    html: str, show_overlay: bool = True, socket_port: Optional[int] = None
) -> str:
    """Embed the reload client into an HTML document.

    Returns the input unchanged if a previously injected block is found, so
    pages that are processed twice still carry exactly one client. The block
    goes right before the first closing head tag, or at the very top of the
    document when there is none.

    Args:
        html: The page source.
        show_overlay: Render on-page toasts instead of console-only logging.
        socket_port: Port of the socket-channel listener. None means the
            page's own port.
    """
    if RELOAD_MARKER in html:
        return html

    block = (
        f"<script {RELOAD_MARKER}>"
        f"{reload_client_js(show_overlay, socket_port)}"
        f"</script>\n"
    )

    match = _HEAD_CLOSE.search(html)
    if match:
        return html[: match.start()] + block + html[match.start() :]
    return block + html
