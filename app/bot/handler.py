from loguru import logger
from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from app.config import get_settings
from app.deps import catalog, dispatcher, ledger, members
from app.services.ledger import summarize_balances
from app.services.replies import format_amount

settings = get_settings()


class TelegramTransport:
    """Sends reply fragments through the bot API."""

    def __init__(self, bot):
        self.bot = bot

    async def send_fragment(self, chat_id: str, text: str):
        return await self.bot.send_message(chat_id=int(chat_id), text=text)

    async def send_typing(self, chat_id: str) -> None:
        await self.bot.send_chat_action(chat_id=int(chat_id), action=ChatAction.TYPING)


def _balances_summary(chat_id: str) -> str:
    balances = summarize_balances(members, ledger, chat_id)
    if not balances:
        return "Nhóm mình không ai nợ ai cả 🎉"

    lines = ["Sổ nợ hiện tại:\n"]
    for i, b in enumerate(balances, 1):
        lines.append(f"{i}. {b.debtor_name} nợ {b.creditor_name} {format_amount(b.amount, b.currency)}")
    return "\n".join(lines)


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start command."""
    await update.message.reply_text(
        "Chào cả nhà! E là bot giữ sổ nợ của nhóm 📒\n\n"
        "Cứ nhắn tự nhiên, e sẽ ghi lại ai nợ ai.\n\n"
        "Ví dụ:\n"
        '• "ghi nợ cho Huy 200k tiền cà phê"\n'
        '• "Long ú trả t 50k rồi"\n'
        '• "tao với Nam hết nợ nhau rồi nha"\n\n'
        "Lệnh:\n"
        "/debts - Xem ai đang nợ ai\n"
        "/food - Gợi ý hôm nay ăn gì\n"
        "/about - Giới thiệu bot\n"
        "/help - Xem lại tin nhắn này"
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /help command."""
    await start_command(update, context)


async def about_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(
        "🤖 Bot sổ nợ nhóm\n\n"
        "• Nhớ biệt danh của từng người trong nhóm\n"
        "• Hỏi lại khi không chắc ai là ai\n"
        "• Ghi nợ cả cho người chưa vào nhóm"
    )


async def debts_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /debts command."""
    await update.message.reply_text(_balances_summary(str(update.effective_chat.id)))


async def food_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /food [region|category|name] command."""
    query = " ".join(context.args or [])
    item = catalog.suggest(query or None)
    if item is None:
        await update.message.reply_text(f'e không tìm được món nào cho "{query}" 😔')
        return
    await update.message.reply_text(
        f"🍽️ Hôm nay ăn {item.name} nha!\n{item.description}\n({item.region}, {item.category})"
    )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Route every plain text message through the turn dispatcher."""
    message = update.message
    if message is None or not message.text:
        return

    chat_id = str(update.effective_chat.id)
    user = update.effective_user
    sender_id = None
    if user is not None and not user.is_bot:
        sender = members.upsert_real(chat_id, user.id, user.full_name, user.username)
        sender_id = sender.member_id

    logger.info("Message in chat {} from {}: {}", chat_id, sender_id, message.text)
    result = await dispatcher.handle_message(
        chat_id,
        message.text,
        sender_id=sender_id,
        transport=TelegramTransport(context.bot),
    )
    if result.status != "completed":
        logger.warning("Turn in chat {} ended with {}", chat_id, result.status)


def build_bot_app() -> Application:
    """Build and return the Telegram bot application."""
    # Turns in different chats run concurrently; one chat is serialized by the dispatcher.
    app = Application.builder().token(settings.telegram_bot_token).concurrent_updates(True).build()

    # Command handlers
    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("about", about_command))
    app.add_handler(CommandHandler("debts", debts_command))
    app.add_handler(CommandHandler(["food", "randomfood"], food_command))

    # Message handlers
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    return app
