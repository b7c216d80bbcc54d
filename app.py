"""FastAPI application entrypoint for Telegram webhook processing."""

from __future__ import annotations

import asyncio
import html
import os
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from functools import wraps
from typing import AsyncIterator, Hashable, Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from telegram import Message, Update, User, constants
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from utils.errors import GenerationDisabled, LlmError, RoundAlreadyActive
from utils.judge import AnswerJudge
from utils.llm_client import JUDGE_TEMPERATURE, LlmClient, build_chat_model
from utils.logging_config import configure_logging, get_logger, logging_context
from utils.question_source import QuestionSource
from utils.rate_limiter import DEFAULT_MAX_ATTEMPTS, DEFAULT_MIN_INTERVAL_SECONDS, RateLimiter
from utils.rounds import RoundStateMachine, RoundStatus, Verdict
from utils.subscribers import SubscriberRegistry

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = get_logger("app")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Settings:
    """Container for application environment variables."""

    telegram_bot_token: str
    public_url: str
    webhook_secret: str
    webhook_path: str = "/webhook"
    webhook_check_interval: int = 300
    admin_id: Optional[int] = None
    openai_api_key: Optional[str] = None
    openai_model: Optional[str] = None
    llm_enabled: bool = True
    llm_min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS
    llm_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    auto_reset_after_win: bool = True


_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_number(name: str, default: float, *, minimum: float, cast=float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(cast(raw.strip()), minimum)
    except ValueError:
        logger.warning("Invalid %s provided, using default %s: %s", name, default, raw)
        return default


def load_settings() -> Settings:
    """Load and validate required settings from environment variables."""

    required_vars = {
        "TELEGRAM_BOT_TOKEN": os.getenv("TELEGRAM_BOT_TOKEN"),
        "PUBLIC_URL": os.getenv("PUBLIC_URL"),
        "WEBHOOK_SECRET": os.getenv("WEBHOOK_SECRET"),
        "WEBHOOK_PATH": os.getenv("WEBHOOK_PATH", "/webhook"),
    }

    missing = [name for name, value in required_vars.items() if not value]
    if missing:
        logger.critical("Missing required environment variables: %s", ", ".join(missing))
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    logger.debug("Loaded environment variables: %s", {k: v for k, v in required_vars.items() if k != "TELEGRAM_BOT_TOKEN"})

    admin_id_raw = os.getenv("ADMIN_ID")
    admin_id: Optional[int] = None
    if admin_id_raw:
        try:
            admin_id = int(admin_id_raw)
        except ValueError:
            logger.warning("Invalid ADMIN_ID provided, ignoring value: %s", admin_id_raw)
            admin_id = None

    webhook_path = required_vars["WEBHOOK_PATH"]
    return Settings(
        telegram_bot_token=required_vars["TELEGRAM_BOT_TOKEN"],
        public_url=required_vars["PUBLIC_URL"].rstrip("/"),
        webhook_secret=required_vars["WEBHOOK_SECRET"],
        webhook_path=webhook_path if webhook_path.startswith("/") else f"/{webhook_path}",
        webhook_check_interval=_env_number("WEBHOOK_CHECK_INTERVAL", 300, minimum=60, cast=int),
        admin_id=admin_id,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL") or None,
        llm_enabled=_env_flag("LLM_ENABLED", True),
        llm_min_interval=_env_number("LLM_MIN_INTERVAL", DEFAULT_MIN_INTERVAL_SECONDS, minimum=0.0),
        llm_max_attempts=_env_number("LLM_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, minimum=1, cast=int),
        auto_reset_after_win=_env_flag("AUTO_RESET_AFTER_WIN", True),
    )


# ---------------------------------------------------------------------------
# FastAPI application and telegram application state
# ---------------------------------------------------------------------------


app = FastAPI()


class AppState:
    """Shared state container for the FastAPI application and the riddle engine."""

    def __init__(self) -> None:
        self.settings: Optional[Settings] = None
        self.telegram_app: Optional[Application] = None
        self.webhook_task: Optional[asyncio.Task[None]] = None
        self.registry = SubscriberRegistry()
        self.rate_limiter = RateLimiter()
        self.llm_client: Optional[LlmClient] = None
        self.judge = AnswerJudge()
        self.rounds = RoundStateMachine(self.judge, auto_reset_after_win=True)
        self.questions = QuestionSource(self.rounds)

    def configure_engine(self, settings: Settings) -> None:
        """Rebuild the riddle engine from settings; subscribers are kept."""

        self.rate_limiter = RateLimiter(settings.llm_min_interval, settings.llm_max_attempts)
        chat_model = build_chat_model(settings.openai_api_key, settings.openai_model)
        if chat_model is not None:
            judge_model = build_chat_model(
                settings.openai_api_key, settings.openai_model, temperature=JUDGE_TEMPERATURE
            )
            self.llm_client = LlmClient(chat_model, self.rate_limiter, judge_llm=judge_model)
        else:
            self.llm_client = None
        self.judge = AnswerJudge(self.llm_client)
        self.rounds = RoundStateMachine(self.judge, auto_reset_after_win=settings.auto_reset_after_win)
        self.questions = QuestionSource(self.rounds, self.llm_client, enabled=settings.llm_enabled)
        logger.info(
            "Riddle engine configured (llm=%s, generation=%s, auto_reset=%s)",
            self.llm_client is not None,
            settings.llm_enabled,
            settings.auto_reset_after_win,
        )


state = AppState()


def get_telegram_application() -> Application:
    if state.telegram_app is None:
        logger.error("Telegram application is not initialized")
        raise HTTPException(status_code=503, detail="Telegram application is not ready")
    return state.telegram_app


def command_entrypoint(fallback=None):
    """Decorator for command handlers providing logging context and error handling."""

    def decorator(func):
        @wraps(func)
        async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
            chat = update.effective_chat if update else None
            chat_id = chat.id if chat else None
            with logging_context(chat_id=chat_id):
                try:
                    return await func(update, context, *args, **kwargs)
                except Exception:  # noqa: BLE001 - ensure all exceptions are logged
                    logger.exception("Unhandled error in command %s", getattr(func, "__name__", "<unknown>"))
                    message = update.effective_message if update else None
                    if message is not None:
                        await message.reply_text(
                            "Произошла временная ошибка. Пожалуйста, попробуйте позже."
                        )
                    return fallback

        return wrapper

    return decorator


def register_webhook_route(path: str) -> None:
    """Register the webhook endpoint for the configured path."""

    router = app.router
    for route in list(router.routes):
        if getattr(route, "endpoint", None) is telegram_webhook:
            logger.debug("Removing existing webhook route bound to %s", getattr(route, "path", "<unknown>"))
            router.routes.remove(route)

    logger.debug("Registering webhook route at path %s", path)
    router.add_api_route(path, telegram_webhook, methods=["POST"], name="telegram_webhook")


# ---------------------------------------------------------------------------
# Riddle helpers
# ---------------------------------------------------------------------------


GREETING_TEXT = "привет"
HELP_TEXT = (
    "Я загадываю загадки всем подписчикам. Кто первым пришлёт верный ответ, тот и победил.\n"
    "/riddle [тема] - новая загадка\n"
    "/status - текущая загадка\n"
    "/broadcast текст - сообщение всем подписчикам\n"
    "Чтобы ответить, просто напишите ответ в чат."
)
DEFAULT_BROADCAST_TEXT = "Общее сообщение"
NOT_SUBSCRIBED_TEXT = "Сначала отправьте /start, чтобы участвовать."
NO_ROUND_TEXT = "Сейчас нет активной загадки. Используйте /riddle, чтобы начать."
ADMIN_ONLY_TEXT = "Эта команда доступна только администратору."
RIDDLE_ANNOUNCEMENT_TEMPLATE = "🧩 <b>Новая загадка!</b>\n\n{question}\n\nПришлите ответ сообщением."
WINNER_ANNOUNCEMENT_TEMPLATE = "🏆 {winner} первым отгадал загадку!\nОтвет: <b>{answer}</b>"

ALLOWED_UPDATES = ["message"]


@dataclass(slots=True)
class BroadcastResult:
    successful_chats: set[Hashable]
    failed_chats: set[Hashable]


async def _broadcast_to_subscribers(
    context: ContextTypes.DEFAULT_TYPE,
    text: str,
    *,
    parse_mode: str | None = None,
    exclude_chat_ids: Iterable[Hashable] | None = None,
) -> BroadcastResult:
    """Send a text message to every registered subscriber."""

    excluded = set(exclude_chat_ids or [])
    successful: set[Hashable] = set()
    failed: set[Hashable] = set()
    for chat_id in state.registry.all():
        if chat_id in excluded:
            continue
        try:
            await context.bot.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode)
            successful.add(chat_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to deliver broadcast to chat %s", chat_id)
            failed.add(chat_id)
    return BroadcastResult(successful_chats=successful, failed_chats=failed)


def _command_argument(text: str | None) -> str:
    """Return the text following the command word, e.g. ``/broadcast@bot hi`` -> ``hi``."""

    if not text:
        return ""
    parts = text.strip().split(maxsplit=1)
    if len(parts) < 2 or not parts[0].startswith("/"):
        return ""
    return parts[1].strip()


def _player_identity(user: User | None, chat_id: Hashable) -> str:
    """Stable key of the answering player: the Telegram user id, or the chat for anonymous posts."""

    if user is None:
        return f"chat:{chat_id}"
    return str(user.id)


def _user_label(user: User | None) -> str:
    if user is None:
        return "Игрок"
    if user.username:
        return f"@{user.username}"
    full_name = (user.full_name or "").strip()
    if full_name:
        return full_name
    return str(user.id)


def _is_admin(update: Update) -> bool:
    settings = state.settings
    if settings is None or settings.admin_id is None:
        return True
    user = update.effective_user
    return user is not None and user.id == settings.admin_id


async def _reply_admin_only(message: Message) -> None:
    await message.reply_text(ADMIN_ONLY_TEXT)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@command_entrypoint()
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat = update.effective_chat
    message = update.effective_message
    if chat is None or message is None:
        return

    added = state.registry.register(chat.id)
    if not added:
        logger.debug("Chat %s is already subscribed", chat.id)
    await message.reply_text(f"{GREETING_TEXT}\n\n{HELP_TEXT}")


@command_entrypoint()
async def broadcast_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat = update.effective_chat
    message = update.effective_message
    if chat is None or message is None:
        return

    text = _command_argument(message.text) or DEFAULT_BROADCAST_TEXT
    subscribers_count = len(state.registry.all())
    result = await _broadcast_to_subscribers(context, text)
    logger.info(
        "Broadcast delivered to %s of %s subscribers",
        len(result.successful_chats),
        subscribers_count,
    )
    await message.reply_text(f"Сообщение отправлено {subscribers_count} подписчикам")


@command_entrypoint()
async def riddle_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat = update.effective_chat
    message = update.effective_message
    if chat is None or message is None:
        return

    category = _command_argument(message.text) or None
    previous_question = state.rounds.current_question()
    try:
        pair = await state.questions.generate(category=category)
    except RoundAlreadyActive as exc:
        logger.info("Riddle request rejected: %s", exc)
        await message.reply_text(_format_round_busy())
        return
    except (GenerationDisabled, LlmError) as exc:
        logger.info("Using static riddle bank (%s)", exc.code)
        pair = state.questions.fallback(exclude_question=previous_question)

    try:
        current = await state.rounds.start_round(pair.question, pair.answer)
    except RoundAlreadyActive:
        await message.reply_text(_format_round_busy())
        return

    announcement = RIDDLE_ANNOUNCEMENT_TEMPLATE.format(question=html.escape(current.question))
    with logging_context(round_id=current.round_id):
        result = await _broadcast_to_subscribers(
            context, announcement, parse_mode=constants.ParseMode.HTML
        )
        logger.info("Riddle broadcast to %s chats", len(result.successful_chats))
    if chat.id not in result.successful_chats:
        await message.reply_text(announcement, parse_mode=constants.ParseMode.HTML)


def _format_round_busy() -> str:
    question = state.rounds.current_question()
    if question is None:
        return "Загадка уже готовится, подождите немного."
    if state.rounds.status is RoundStatus.WON:
        return "Раунд завершён. Администратор должен сбросить его командой /reset."
    return f"Раунд уже идёт. Текущая загадка:\n\n{question}"


@command_entrypoint()
async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return

    rounds = state.rounds
    lines = [f"Подписчиков: {len(state.registry)}"]
    generation = "включена" if state.questions.enabled else "выключена"
    lines.append(f"Генерация загадок: {generation}")
    question = rounds.current_question()
    if question is None:
        lines.append("Активной загадки нет.")
    else:
        lines.append(f"Загадка: {question}")
        if rounds.winner is not None:
            lines.append(f"Победитель: {rounds.winner_label}")
        else:
            lines.append(f"Неверных ответов: {len(rounds.pending_answers())}")
    await message.reply_text("\n".join(lines))


@command_entrypoint()
async def llm_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    if not _is_admin(update):
        await _reply_admin_only(message)
        return

    enabled = state.questions.toggle()
    reply = "Генерация загадок включена." if enabled else "Генерация загадок выключена, используются загадки из запаса."
    if enabled and state.llm_client is None:
        reply += " Ключ OpenAI не настроен, поэтому будут использованы загадки из запаса."
    await message.reply_text(reply)


@command_entrypoint()
async def reset_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    if not _is_admin(update):
        await _reply_admin_only(message)
        return

    previous = await state.rounds.reset()
    if previous is None:
        await message.reply_text("Активной загадки не было.")
        return
    await message.reply_text(
        f"Раунд сброшен. Ответ был: {previous.reference_answer}\nИспользуйте /riddle для новой загадки."
    )


@command_entrypoint()
async def answer_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat = update.effective_chat
    message = update.effective_message
    if chat is None or message is None or not message.text:
        return

    if chat.id not in state.registry:
        await message.reply_text(NOT_SUBSCRIBED_TEXT)
        return

    user = update.effective_user
    identity = _player_identity(user, chat.id)
    label = _user_label(user)
    result = await state.rounds.submit_answer(identity, message.text, label=label)

    if result.verdict is Verdict.WON:
        reply = "🎉 Верно! Вы победили в этом раунде."
        if result.feedback:
            reply += f"\n{result.feedback}"
        await message.reply_text(reply)
        announcement = WINNER_ANNOUNCEMENT_TEMPLATE.format(
            winner=html.escape(label),
            answer=html.escape(result.reference_answer or ""),
        )
        await _broadcast_to_subscribers(
            context,
            announcement,
            parse_mode=constants.ParseMode.HTML,
            exclude_chat_ids=[chat.id],
        )
        return

    if result.verdict is Verdict.LOST:
        reply = "❌ Неверно, попробуйте ещё."
        if result.feedback:
            reply += f"\n{result.feedback}"
        await message.reply_text(reply)
        return

    if result.winner is not None:
        await message.reply_text(f"Раунд уже завершён, победитель: {result.winner_label}.")
    else:
        await message.reply_text(NO_ROUND_TEXT)


def configure_telegram_handlers(telegram_application: Application) -> None:
    telegram_application.add_handler(CommandHandler("start", start_command, block=False))
    telegram_application.add_handler(CommandHandler("broadcast", broadcast_command, block=False))
    telegram_application.add_handler(CommandHandler(["riddle", "new"], riddle_command, block=False))
    telegram_application.add_handler(CommandHandler("status", status_command, block=False))
    telegram_application.add_handler(CommandHandler("llm", llm_command, block=False))
    telegram_application.add_handler(CommandHandler("reset", reset_command, block=False))
    telegram_application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, answer_handler, block=False)
    )


# ---------------------------------------------------------------------------
# Webhook monitoring
# ---------------------------------------------------------------------------


async def monitor_webhook(application: Application, settings: Settings) -> None:
    """Background task to periodically ensure webhook registration is valid."""

    logger.debug("Starting webhook monitor task with interval %s seconds", settings.webhook_check_interval)
    expected_url = f"{settings.public_url}{settings.webhook_path}"
    while True:
        try:
            info = await application.bot.get_webhook_info()
            logger.debug("Current webhook info: url=%s, pending=%s", info.url, info.pending_update_count)
            if info.url != expected_url:
                logger.warning("Webhook mismatch detected. Expected url=%s, got %s", expected_url, info.url)
                await _set_webhook(application, settings)
                logger.info("Webhook re-registered due to mismatch")
        except Exception:  # noqa: BLE001 - We want to log all failures
            logger.exception("Failed to validate or reset webhook")

        await asyncio.sleep(settings.webhook_check_interval)


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    logger.debug("FastAPI startup initiated")

    settings = load_settings()
    state.settings = settings
    state.configure_engine(settings)

    logger.debug("Building Telegram application")
    httpx_request = HTTPXRequest()
    telegram_application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .request(httpx_request)
        .updater(None)
        .build()
    )

    configure_telegram_handlers(telegram_application)

    await telegram_application.initialize()
    logger.info("Telegram application initialized")

    await telegram_application.start()
    logger.info("Telegram application started")

    state.telegram_app = telegram_application

    register_webhook_route(settings.webhook_path)
    await _set_webhook(telegram_application, settings)
    logger.info("Webhook configured at %s%s", settings.public_url, settings.webhook_path)

    state.webhook_task = asyncio.create_task(monitor_webhook(telegram_application, settings))

    try:
        yield
    finally:
        logger.debug("FastAPI shutdown initiated")

        if state.webhook_task:
            logger.debug("Cancelling webhook monitor task")
            state.webhook_task.cancel()
            with suppress(asyncio.CancelledError):
                await state.webhook_task
            state.webhook_task = None

        if state.telegram_app:
            logger.debug("Shutting down Telegram application")

            if getattr(state.telegram_app, "running", False):
                logger.debug("Stopping Telegram application")
                await state.telegram_app.stop()

            await state.telegram_app.shutdown()
            state.telegram_app = None
            logger.info("Telegram application shut down")


app.router.lifespan_context = app_lifespan


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/healthz")
async def healthz() -> JSONResponse:
    logger.debug("Health check requested")
    return JSONResponse({"status": "ok"})


async def telegram_webhook(
    request: Request,
    telegram_application: Application = Depends(get_telegram_application),
) -> JSONResponse:
    settings = state.settings
    if settings is None:
        logger.error("Application settings are not available during webhook call")
        raise HTTPException(status_code=503, detail="Application settings unavailable")

    secret_header = request.headers.get("X-Telegram-Bot-Api-Secret-Token")
    secret_query = request.query_params.get("secret_token")
    if settings.webhook_secret not in {secret_header, secret_query}:
        logger.warning(
            "Webhook secret mismatch: header=%s query=%s",
            secret_header,
            secret_query,
        )
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        payload = await request.json()
        logger.debug("Received webhook payload: %s", payload)
        update = Update.de_json(payload, telegram_application.bot)
    except Exception as exc:  # noqa: BLE001 - we need to report deserialization errors
        logger.exception("Failed to deserialize Telegram update")
        raise HTTPException(status_code=400, detail="Invalid update payload") from exc

    try:
        await telegram_application.process_update(update)
    except Exception as exc:  # noqa: BLE001 - log any processing errors
        logger.exception("Failed to process Telegram update")
        raise HTTPException(status_code=500, detail="Failed to process update") from exc
    logger.debug("Update processed successfully")
    return JSONResponse({"ok": True})


async def _set_webhook(telegram_application: Application, settings: Settings) -> None:
    expected_url = f"{settings.public_url}{settings.webhook_path}"
    logger.debug("Setting webhook to %s", expected_url)
    await telegram_application.bot.set_webhook(
        url=expected_url,
        secret_token=settings.webhook_secret,
        allowed_updates=ALLOWED_UPDATES,
    )


@app.get("/set_webhook")
async def set_webhook(
    telegram_application: Application = Depends(get_telegram_application),
) -> JSONResponse:
    settings = state.settings
    if settings is None:
        logger.error("Attempted to set webhook without settings available")
        raise HTTPException(status_code=503, detail="Application settings unavailable")

    await _set_webhook(telegram_application, settings)
    return JSONResponse({"status": "webhook set"})


@app.get("/reset_webhook")
async def reset_webhook(
    telegram_application: Application = Depends(get_telegram_application),
) -> JSONResponse:
    settings = state.settings
    if settings is None:
        logger.error("Attempted to reset webhook without settings available")
        raise HTTPException(status_code=503, detail="Application settings unavailable")

    logger.debug("Deleting current webhook before reconfiguration")
    await telegram_application.bot.delete_webhook(drop_pending_updates=False)
    await _set_webhook(telegram_application, settings)
    return JSONResponse({"status": "webhook reset"})


__all__ = ["app"]
