"""
FastAPI Status and Webhook Server
- /         pairing page: QR code of the bot link once connected, "starting" page before
- /health   readiness probe (503 until the transport is connected)
- /webhook  Telegram updates, when USE_WEBHOOK is on
"""

import asyncio
import base64
import html
import logging
import time
from io import BytesIO
from typing import Optional

import orjson
import qrcode
import qrcode.constants
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from qrcode.main import QRCode
from telegram import Update

from config import Config
from handlers.telegram_bot import TransportState

logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{Config.BRAND} Status Server",
    description="Pairing page, readiness probe and Telegram webhook",
)

# Set by main.py once the services are built
_transport_state = TransportState()
_bot_application = None
_startup_timestamp: Optional[float] = None


def set_bot_application(application, state: TransportState):
    """Attach the Telegram application and its transport status"""
    global _bot_application, _transport_state, _startup_timestamp
    _bot_application = application
    _transport_state = state
    _startup_timestamp = time.time()
    logger.info("✅ STATUS_SERVER: Bot application attached")


def get_transport_state() -> TransportState:
    return _transport_state


def generate_qr_code(data: str, size: int = 10, border: int = 4) -> Optional[str]:
    """Render data as a PNG QR code and return it base64 encoded"""
    try:
        qr = QRCode(
            version=None,  # Auto-determine version based on data length
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=size,
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffered = BytesIO()
        img.save(buffered, format="PNG")
        return base64.b64encode(buffered.getvalue()).decode()
    except (ValueError, OSError) as e:
        logger.error(f"QR code generation failed: {e}", exc_info=True)
        return None


def _page(title: str, body: str, refresh_seconds: Optional[int] = None) -> str:
    refresh = f'<meta http-equiv="refresh" content="{refresh_seconds}">' if refresh_seconds else ""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>{html.escape(title)}</title>
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        {refresh}
    </head>
    <body style="font-family: sans-serif; text-align: center; padding: 2rem;">
        {body}
    </body>
    </html>
    """


@app.get("/")
async def pairing_page():
    """QR code of the bot link, or a self-refreshing "starting" page"""
    state = _transport_state
    brand = html.escape(Config.BRAND)

    if not state.ready or not state.pairing_artifact:
        return HTMLResponse(content=_page(
            f"{Config.BRAND} - Starting",
            f"<h1>{brand}</h1><p>⏳ The bot is starting. This page refreshes automatically.</p>",
            refresh_seconds=5,
        ))

    link = html.escape(state.pairing_artifact)
    qr_base64 = generate_qr_code(state.pairing_artifact)
    qr_html = (
        f'<img src="data:image/png;base64,{qr_base64}" alt="Scan to open the bot" '
        f'style="width: 300px; height: 300px;">'
        if qr_base64 else ""
    )
    return HTMLResponse(content=_page(
        Config.BRAND,
        f"<h1>{brand}</h1>"
        f"<p>Scan the QR code or open the link to start chatting.</p>"
        f"{qr_html}"
        f'<p><a href="{link}">{link}</a></p>',
    ))


@app.get("/health")
async def health_check():
    """Health check endpoint with startup readiness"""
    state = _transport_state
    if not state.ready:
        return JSONResponse(
            content={
                "status": "starting",
                "service": "investment-bot",
                "ready": False,
                "message": "Bot transport is not connected yet",
            },
            status_code=503  # Service Unavailable during startup
        )

    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    return {
        "status": "healthy",
        "service": "investment-bot",
        "ready": True,
        "bot": state.bot_username,
        "uptime_seconds": round(uptime, 2),
    }


@app.post("/webhook")
async def webhook(request: Request):
    """Telegram webhook: validate, acknowledge, process in the background"""
    if not Config.USE_WEBHOOK:
        return JSONResponse(content={"error": "Webhook mode disabled"}, status_code=404)

    if _bot_application is None:
        logger.error("❌ Bot application not initialized")
        return JSONResponse(content={"error": "Bot not initialized"}, status_code=503)

    body = await request.body()
    if not body:
        logger.warning("⚠️ Empty webhook body received")
        return JSONResponse(content={"error": "Empty body"}, status_code=400)

    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        logger.error(f"❌ JSON decode error: {e}")
        return JSONResponse(content={"error": "Invalid JSON"}, status_code=400)

    if not isinstance(data, dict) or "update_id" not in data:
        logger.error("❌ Invalid webhook data structure")
        return JSONResponse(content={"error": "Invalid webhook data"}, status_code=400)

    update = Update.de_json(data, _bot_application.bot)
    asyncio.create_task(_process_update_background(update))
    return JSONResponse(content={"ok": True}, status_code=200)


async def _process_update_background(update: Update):
    try:
        await _bot_application.process_update(update)
    except Exception as e:
        logger.error(f"❌ WEBHOOK: Failed to process update {update.update_id}: {type(e).__name__}: {e}")
