"""Telegram front-end: chats and forum topics map to relay channels."""

import logging
import re
from typing import Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .approvals import ApprovalCoordinator
from .credentials import CredentialStore
from .dispatcher import CommandDispatcher
from .models import ApprovalDecision, DeliveryResult, EventType, RelayEvent
from .process_session import ProcessSessionError

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 4000
DEBUG_CHUNKS = 30
DEBUG_CHARS = 1800

# Approval buttons: callback code -> (label, decision)
APPROVAL_BUTTONS = {
    "a": ("✓ Yes (once)", ApprovalDecision.ALLOW),
    "s": ("✓ Yes, this session", ApprovalDecision.ALLOW_SESSION),
    "d": ("✗ No", ApprovalDecision.DENY),
}


def make_channel_id(chat_id: int, thread_id: Optional[int] = None) -> str:
    """Channel id for a chat, or for one forum topic inside it."""
    if thread_id:
        return f"tg:{chat_id}:{thread_id}"
    return f"tg:{chat_id}"


def parse_channel_id(channel_id: str) -> Optional[tuple[int, Optional[int]]]:
    """Inverse of make_channel_id; None for channels that are not Telegram chats."""
    match = re.fullmatch(r'tg:(-?\d+)(?::(\d+))?', channel_id)
    if not match:
        return None
    thread_id = int(match.group(2)) if match.group(2) else None
    return int(match.group(1)), thread_id


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> list[str]:
    """Split text into Telegram-sized pieces, preferring line boundaries."""
    pieces = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        pieces.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        pieces.append(text)
    return pieces


def escape_markdown_v2(text: str) -> str:
    """Escape text for MarkdownV2, keeping code spans and turning **bold** into *bold*."""
    escape_chars = r'\_[]()~`>#+-=|{}.!*'
    result = []
    i = 0
    while i < len(text):
        for fence in ("```", "`"):
            if text.startswith(fence, i):
                end = text.find(fence, i + len(fence))
                if end != -1:
                    result.append(text[i:end + len(fence)])
                    i = end + len(fence)
                    break
        else:
            if text.startswith("**", i):
                end = text.find("**", i + 2)
                if end != -1:
                    result.append(f"*{escape_markdown_v2(text[i + 2:end])}*")
                    i = end + 2
                    continue
            char = text[i]
            result.append("\\" + char if char in escape_chars else char)
            i += 1
    return "".join(result)


def create_prompt_keyboard(channel_id: str, options: list[str]) -> InlineKeyboardMarkup:
    """One button per prompt option; callback data is "prompt:<channel>:<index>"."""
    keyboard = [
        [InlineKeyboardButton(option[:60], callback_data=f"prompt:{channel_id}:{index}")]
        for index, option in enumerate(options)
    ]
    return InlineKeyboardMarkup(keyboard)


def create_approval_keyboard(request_id: str) -> InlineKeyboardMarkup:
    keyboard = [
        [
            InlineKeyboardButton(APPROVAL_BUTTONS["a"][0], callback_data=f"appr:{request_id}:a"),
            InlineKeyboardButton(APPROVAL_BUTTONS["s"][0], callback_data=f"appr:{request_id}:s"),
        ],
        [InlineKeyboardButton(APPROVAL_BUTTONS["d"][0], callback_data=f"appr:{request_id}:d")],
    ]
    return InlineKeyboardMarkup(keyboard)


class TelegramBot:
    """Telegram bot relaying chat messages to agent channels."""

    def __init__(
        self,
        token: str,
        dispatcher: CommandDispatcher,
        coordinator: ApprovalCoordinator,
        credentials: Optional[CredentialStore] = None,
        allowed_chat_ids: Optional[list[int]] = None,
        allowed_user_ids: Optional[list[int]] = None,
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            dispatcher: Runs commands on channels
            coordinator: Receives approval decisions from button presses
            credentials: Credential aliases for per-user agent tokens
            allowed_chat_ids: Chat IDs allowed to use the bot (None = allow all)
            allowed_user_ids: User IDs allowed to use the bot (None = allow all)
        """
        self.token = token
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.credentials = credentials
        self.allowed_chat_ids = set(allowed_chat_ids) if allowed_chat_ids else None
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

    def _is_allowed(self, chat_id: int, user_id: Optional[int] = None) -> bool:
        """Check if a chat/user is allowed to use the bot."""
        if self.allowed_user_ids is not None:
            if user_id is None or user_id not in self.allowed_user_ids:
                return False
        if self.allowed_chat_ids is not None:
            if chat_id not in self.allowed_chat_ids:
                return False
        return True

    def _check(self, update: Update) -> bool:
        user_id = update.effective_user.id if update.effective_user else None
        if self._is_allowed(update.effective_chat.id, user_id):
            return True
        logger.warning(f"Unauthorized: chat_id={update.effective_chat.id}, user_id={user_id}")
        return False

    def _check_query(self, query) -> bool:
        user_id = query.from_user.id if query.from_user else None
        chat_id = query.message.chat.id if query.message else None
        if self._is_allowed(chat_id, user_id):
            return True
        logger.warning(f"Unauthorized button press: chat_id={chat_id}, user_id={user_id}")
        return False

    @staticmethod
    def _channel_for(update: Update) -> str:
        message = update.effective_message
        thread_id = message.message_thread_id if message and update.effective_chat.is_forum else None
        return make_channel_id(update.effective_chat.id, thread_id)

    @staticmethod
    def _user_key(update: Update) -> Optional[str]:
        return str(update.effective_user.id) if update.effective_user else None

    def _credential_for(self, update: Update) -> Optional[str]:
        if not self.credentials:
            return None
        credential = self.credentials.for_user(self._user_key(update))
        return credential.token if credential else None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_notification(
        self,
        channel_id: str,
        message: str,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> Optional[int]:
        """
        Send a message to the chat (and topic) behind a channel.

        Returns:
            Message ID of sent message, or None on failure
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return None
        target = parse_channel_id(channel_id)
        if target is None:
            logger.warning(f"Channel {channel_id} is not a Telegram chat")
            return None
        chat_id, thread_id = target

        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                message_thread_id=thread_id,
                parse_mode=parse_mode,
                reply_markup=reply_markup,
            )
            return msg.message_id
        except Exception as e:
            # If markdown parsing fails, retry without parse_mode
            if parse_mode:
                logger.warning(f"Markdown parsing failed, retrying as plain text: {e}")
                try:
                    msg = await self.bot.send_message(
                        chat_id=chat_id,
                        text=message.replace("\\", ""),
                        message_thread_id=thread_id,
                        reply_markup=reply_markup,
                    )
                    return msg.message_id
                except Exception as e2:
                    logger.error(f"Failed to send plain text message: {e2}")
                    return None
            logger.error(f"Failed to send Telegram message: {e}")
            return None

    async def send_document(self, channel_id: str, data: bytes, filename: str) -> Optional[int]:
        """Upload a file to the chat (and topic) behind a channel."""
        if not self.bot:
            logger.error("Bot not initialized")
            return None
        target = parse_channel_id(channel_id)
        if target is None:
            logger.warning(f"Channel {channel_id} is not a Telegram chat")
            return None
        chat_id, thread_id = target

        try:
            msg = await self.bot.send_document(
                chat_id=chat_id,
                document=data,
                filename=filename,
                message_thread_id=thread_id,
            )
            return msg.message_id
        except Exception as e:
            logger.error(f"Failed to send Telegram document {filename}: {e}")
            return None

    async def send_long_message(self, channel_id: str, text: str, markdown: bool = False):
        for piece in split_message(text):
            if markdown:
                await self.send_notification(channel_id, escape_markdown_v2(piece), parse_mode="MarkdownV2")
            else:
                await self.send_notification(channel_id, piece)

    async def handle_event(self, event: RelayEvent):
        """Render a relay notification in the channel's chat."""
        data = event.data
        channel_id = event.channel_id

        if event.event_type == EventType.PROMPT_DETECTED:
            await self.send_notification(
                channel_id,
                f"❓ {data.get('title') or 'The agent is asking:'}",
                reply_markup=create_prompt_keyboard(channel_id, data.get("options", [])),
            )

        elif event.event_type == EventType.APPROVAL_REQUEST:
            request_id = data["request_id"]
            text = (
                f"⚠️ Permission request (ID: {request_id})\n\n"
                f"Tool: {data.get('tool_name', 'unknown')}"
            )
            if data.get("tool_input"):
                text += f"\nInput:\n{data['tool_input']}"
            await self.send_notification(channel_id, text, reply_markup=create_approval_keyboard(request_id))

        elif event.event_type == EventType.QUEUE_PROCESSING:
            message = data.get("text", "")
            display = message if len(message) <= 100 else message[:97] + "..."
            await self.send_notification(channel_id, f'▶️ Processing: "{display}"')

        elif event.event_type == EventType.TURN_COMPLETE:
            if data.get("result_text"):
                await self.send_long_message(channel_id, data["result_text"])

        elif event.event_type == EventType.PROCESS_EXITED:
            text = f"⚠️ Agent process exited (code {data.get('exit_code')})."
            if data.get("dropped_commands"):
                text += f" {data['dropped_commands']} queued message(s) were dropped."
            await self.send_notification(channel_id, text)

        elif event.event_type == EventType.AGENT_MESSAGE:
            kind = data.get("kind", "markdown")
            content = data.get("content", "")
            if kind == "action":
                await self.send_notification(channel_id, f"🔄 {content}")
            elif kind == "result":
                await self.send_notification(channel_id, f"✅ {content}")
            elif kind == "file_upload":
                await self.send_document(channel_id, data.get("file_data") or b"", data.get("filename") or "file")
            elif kind == "mention":
                await self.send_long_message(channel_id, data.get("mention_text") or content)
            else:
                await self.send_long_message(channel_id, content, markdown=True)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command."""
        if not self._check(update):
            await update.message.reply_text("Unauthorized.")
            return

        await update.message.reply_text(
            "Agent Relay Bot\n\n"
            "Send a message to talk to this chat's agent.\n\n"
            "Commands:\n"
            "/reset - Start a fresh conversation\n"
            "/interrupt - Stop the running command and drop queued messages\n"
            "/compact - Compact the conversation context\n"
            "/debug - Show recent raw terminal output\n"
            "/context - Show context window usage\n"
            "/model [name|clear] - Show or change the model\n"
            "/tokens - List credential aliases\n"
            "/use <alias> - Switch your credential alias\n"
            "/status - Show channel state\n"
            "/help - Show this message"
        )

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /help command."""
        await self._cmd_start(update, context)

    async def _submit(self, update: Update, text: str) -> Optional[DeliveryResult]:
        """Ensure the channel has a process and hand it `text`."""
        channel_id = self._channel_for(update)
        credential = self._credential_for(update)
        try:
            await self.dispatcher.ensure_process(channel_id, credential)
        except ProcessSessionError as e:
            logger.error(f"Failed to start agent for {channel_id}: {e}")
            await update.message.reply_text(f"❌ Failed to start agent: {e}")
            return None

        result, _ = await self.dispatcher.submit(channel_id, text, credential)
        if result == DeliveryResult.QUEUED:
            session = self.dispatcher.registry.get(channel_id)
            position = session.queue_length if session else "?"
            await update.message.reply_text(f"⏳ Queued (position {position})")
        elif result == DeliveryResult.FAILED:
            await update.message.reply_text("❌ Failed to send to the agent")
        return result

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle regular text messages."""
        if not update.message or not update.message.text:
            return
        if not self._check(update):
            return
        try:
            await self._submit(update, update.message.text)
        except Exception as e:
            logger.error(f"Error sending input: {e}")
            await update.message.reply_text(f"Error: {e}")

    async def _cmd_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        if await self.dispatcher.reset_conversation(channel_id):
            await update.message.reply_text("🔄 Conversation reset. The next message starts fresh.")
        else:
            await update.message.reply_text("No conversation to reset.")

    async def _cmd_interrupt(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        if await self.dispatcher.interrupt(channel_id):
            await update.message.reply_text("⏹ Interrupted. Queued messages were dropped.")
        else:
            await update.message.reply_text("No agent running in this chat.")

    async def _cmd_compact(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        session = self.dispatcher.registry.get(channel_id)
        if not session or not session.resume_id:
            await update.message.reply_text("No conversation to compact.")
            return
        if await self._submit(update, "/compact") == DeliveryResult.DELIVERED:
            await update.message.reply_text("📦 Sent /compact to the agent...")

    async def _cmd_debug(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        output = self.dispatcher.get_output(self._channel_for(update), DEBUG_CHUNKS)
        if not output:
            await update.message.reply_text("No terminal output.")
            return
        text = "".join(output)[-DEBUG_CHARS:]
        await update.message.reply_text(f"Recent output:\n{text}")

    async def _cmd_context(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        usage = self.dispatcher.usage_summary(channel_id)
        if not usage:
            await update.message.reply_text("No usage data yet. Send a message first.")
            return
        await update.message.reply_text(
            f"📊 Context usage ({self.dispatcher.get_model(channel_id)})\n"
            f"Input: {usage['input_tokens']:,}\n"
            f"Cache creation: {usage['cache_creation_input_tokens']:,}\n"
            f"Cache read: {usage['cache_read_input_tokens']:,}\n"
            f"Output: {usage['output_tokens']:,}\n"
            f"Total context: {usage['total_context']:,}"
        )

    async def _cmd_model(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        args = context.args or []
        if not args:
            await update.message.reply_text(f"Model: {self.dispatcher.get_model(channel_id)}")
        elif args[0] == "clear":
            self.dispatcher.clear_model(channel_id)
            await update.message.reply_text(f"Model reset to {self.dispatcher.get_model(channel_id)}")
        else:
            self.dispatcher.set_model(channel_id, args[0])
            await update.message.reply_text(f"Model set to {args[0]}")

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._check(update):
            return
        channel_id = self._channel_for(update)
        session = self.dispatcher.registry.get(channel_id)
        if not session:
            await update.message.reply_text("No agent session in this chat yet.")
            return
        lines = [
            f"Channel: {channel_id}",
            f"State: {'busy' if session.busy else 'idle'}, {session.queue_length} queued",
            f"Conversation: {session.resume_id[:8] + '...' if session.resume_id else 'new'}",
            f"Model: {self.dispatcher.get_model(channel_id)}",
            f"Process: {'running' if session.has_process else 'stopped'}",
        ]
        if session.tool_allowlist:
            lines.append(f"Session-approved tools: {', '.join(sorted(session.tool_allowlist))}")
        if session.pending_prompt:
            lines.append(f"Waiting on prompt: {session.pending_prompt.title}")
        await update.message.reply_text("\n".join(lines))

    async def _cmd_tokens(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """List credential aliases, marking the caller's current one."""
        if not self._check(update):
            return
        if not self.credentials or not self.credentials.aliases():
            await update.message.reply_text("No agent credentials configured.")
            return
        current = self.credentials.alias_for(self._user_key(update))
        lines = ["Credential aliases:"]
        for alias in self.credentials.aliases():
            marker = " ✅" if alias == current else ""
            default = " (default)" if alias == self.credentials.default_alias else ""
            lines.append(f"• {alias}{default}{marker} - {self.credentials.get(alias).masked}")
        lines.append("\nTo switch: /use <alias>")
        await update.message.reply_text("\n".join(lines))

    async def _cmd_use(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Switch the caller to another credential alias for messages sent from now on."""
        if not self._check(update):
            return
        args = context.args or []
        if not args:
            await update.message.reply_text("Usage: /use <alias>")
            return
        if not self.credentials:
            await update.message.reply_text("No agent credentials configured.")
            return
        user_key = self._user_key(update)
        credential = self.credentials.set_user_alias(user_key, args[0]) if user_key else None
        if credential is None:
            available = ", ".join(self.credentials.aliases()) or "none"
            await update.message.reply_text(f"❌ Credential {args[0]} not found. Available: {available}")
            return
        await update.message.reply_text(f"✅ Switched to credential {credential.alias}")

    async def _handle_prompt_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle a prompt option button. Format: "prompt:<channel_id>:<index>"."""
        query = update.callback_query
        if not self._check_query(query):
            await query.answer("Unauthorized.")
            return
        await query.answer()

        try:
            _, rest = query.data.split(":", 1)
            channel_id, index = rest.rsplit(":", 1)
            option_index = int(index)
        except ValueError:
            logger.error(f"Invalid prompt callback data: {query.data}")
            await query.edit_message_text("Invalid button data.")
            return

        if await self.dispatcher.send_prompt_response(channel_id, option_index):
            await query.edit_message_text(f"{query.message.text}\n\n✓ Answered option {option_index + 1}")
        else:
            await query.edit_message_text(f"{query.message.text}\n\n✗ Prompt is no longer pending.")

    async def _handle_approval_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle an approval button. Format: "appr:<request_id>:<a|s|d>"."""
        query = update.callback_query
        if not self._check_query(query):
            await query.answer("Unauthorized.")
            return
        await query.answer()

        parts = query.data.split(":")
        if len(parts) != 3 or parts[2] not in APPROVAL_BUTTONS:
            logger.error(f"Invalid approval callback data: {query.data}")
            await query.edit_message_text("Invalid button data.")
            return

        _, request_id, code = parts
        label, decision = APPROVAL_BUTTONS[code]
        user = query.from_user.id if query.from_user else None
        logger.info(f"User {user} answered approval {request_id}: {decision.value}")

        if self.coordinator.resolve_approval(request_id, decision):
            await query.edit_message_text(f"{query.message.text}\n\n{label}")
        else:
            await query.edit_message_text(f"{query.message.text}\n\n✗ Request expired.")

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("help", self._cmd_help))
        self.application.add_handler(CommandHandler("reset", self._cmd_reset))
        self.application.add_handler(CommandHandler("interrupt", self._cmd_interrupt))
        self.application.add_handler(CommandHandler("compact", self._cmd_compact))
        self.application.add_handler(CommandHandler("debug", self._cmd_debug))
        self.application.add_handler(CommandHandler("context", self._cmd_context))
        self.application.add_handler(CommandHandler("model", self._cmd_model))
        self.application.add_handler(CommandHandler("status", self._cmd_status))
        self.application.add_handler(CommandHandler("tokens", self._cmd_tokens))
        self.application.add_handler(CommandHandler("use", self._cmd_use))

        self.application.add_handler(CallbackQueryHandler(self._handle_prompt_callback, pattern="^prompt:"))
        self.application.add_handler(CallbackQueryHandler(self._handle_approval_callback, pattern="^appr:"))

        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))

        # Start polling
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()

        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
