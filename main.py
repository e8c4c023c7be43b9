import csv
import html
import io
import logging
from typing import List, Optional

from telegram import (BotCommand, BotCommandScopeChat, InlineKeyboardButton,
                      InlineKeyboardMarkup, Update)
from telegram.constants import ParseMode
from telegram.error import BadRequest
from telegram.ext import (Application, ApplicationBuilder,
                          CallbackQueryHandler, CommandHandler, ContextTypes,
                          MessageHandler, filters)

import ledger
import orders
import redeem_codes
import storage
from config import (ADMIN_IDS, ADMIN_USERNAME, BOT_TOKEN, CHARGE_FAILED_LINKS,
                    HISTORY_LIMIT, PROGRESS_EVERY, SESSION_TTL_SECONDS,
                    SMM_API_KEY, SMM_API_TIMEOUT, SMM_API_URL, SMM_SECRET_KEY,
                    SMM_SERVICES)
from errors import (BotError, CatalogPriceExceeded, CatalogServiceUnavailable,
                    ExternalApiError, InsufficientBalance, NoValidLinks,
                    OrderNotFound)
from order_batch import (OrderBatchProcessor, ProgressReporter, SessionStore,
                         Stage)
from order_status import refresh_order
from smm_api import SmmPanelAPI

logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

# Telegram rejects texts longer than 4096 chars
MAX_MESSAGE_LEN = 4000

SMM_API: Optional[SmmPanelAPI] = None
PROCESSOR: Optional[OrderBatchProcessor] = None


def build_services():
    global SMM_API, PROCESSOR
    SMM_API = SmmPanelAPI(SMM_API_URL, SMM_API_KEY, SMM_SECRET_KEY, timeout=SMM_API_TIMEOUT)
    PROCESSOR = OrderBatchProcessor(
        SMM_API,
        SMM_SERVICES,
        sessions=SessionStore(ttl=SESSION_TTL_SECONDS),
        charge_failed_links=CHARGE_FAILED_LINKS,
        call_timeout=SMM_API_TIMEOUT,
    )


def is_admin(user) -> bool:
    return bool(user) and str(user.id) in ADMIN_IDS


async def ensure_account(user) -> ledger.Account:
    return await ledger.get_or_create_account(
        str(user.id), user.username, user.first_name, is_admin=is_admin(user)
    )


# --- Keyboards ---

def admin_contact_button() -> Optional[InlineKeyboardButton]:
    if ADMIN_USERNAME:
        return InlineKeyboardButton("📞 Contact Admin", url=f"https://t.me/{ADMIN_USERNAME.lstrip('@')}")
    return InlineKeyboardButton("📞 Contact Admin", callback_data="support:contact")


def back_keyboard(target: str = "back:main") -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("🔙 Back", callback_data=target)]])


def build_main_menu(account: ledger.Account) -> InlineKeyboardMarkup:
    if account.is_admin:
        return InlineKeyboardMarkup([[
            InlineKeyboardButton("👥 User Menu", callback_data="menu:user"),
            InlineKeyboardButton("👑 Admin Menu", callback_data="menu:admin"),
        ]])
    return build_user_menu()


def build_user_menu(with_back: bool = False) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton("🛒 Order", callback_data="order:start")],
        [InlineKeyboardButton("🔢 Check Limit", callback_data="limit:check")],
        [InlineKeyboardButton("📜 Order History", callback_data="history:list")],
        [InlineKeyboardButton("🎟️ Redeem Code", callback_data="redeem:start")],
        [InlineKeyboardButton("👤 Contact Admin", callback_data="support:contact")],
    ]
    if with_back:
        rows.append([InlineKeyboardButton("🔙 Back", callback_data="back:main")])
    return InlineKeyboardMarkup(rows)


def build_admin_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("➕ Add Code", callback_data="admin:add_code")],
        [InlineKeyboardButton("👁️ Check User Limits", callback_data="admin:limits")],
        [InlineKeyboardButton("🔙 Back", callback_data="back:main")],
    ])


def recovery_keyboard(error: BotError) -> InlineKeyboardMarkup:
    """Pick the follow-up actions shown under an error message."""
    if isinstance(error, NoValidLinks):
        return InlineKeyboardMarkup([[InlineKeyboardButton("❌ Cancel Order", callback_data="order:cancel")]])
    if isinstance(error, (InsufficientBalance, CatalogServiceUnavailable, CatalogPriceExceeded)):
        return InlineKeyboardMarkup([
            [admin_contact_button()],
            [InlineKeyboardButton("🔙 Back", callback_data="back:main")],
        ])
    return back_keyboard()


def welcome_text(account: ledger.Account) -> str:
    return (
        "🌟 <b>Welcome to Auto Order Bot</b> 🌟\n\n"
        f"Your current limit: <b>{account.balance}</b> links\n\n"
        "Select an option below:"
    )


async def safe_edit(query, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None, parse_mode: Optional[str] = ParseMode.HTML):
    msg = query.message
    # Document messages have no text to edit: send a fresh message instead
    if msg and not msg.text:
        await query.message.reply_text(text, reply_markup=reply_markup, parse_mode=parse_mode)
        return
    try:
        await query.edit_message_text(text=text, reply_markup=reply_markup, parse_mode=parse_mode)
    except BadRequest as e:
        # Ignore harmless 'Message is not modified' errors
        if 'Message is not modified' not in str(e):
            raise


def error_text(error: BotError) -> str:
    return f"❌ {html.escape(str(error))}"


# --- Commands ---

async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    account = await ensure_account(update.effective_user)
    context.user_data.pop('awaiting_redeem', None)
    context.user_data.pop('awaiting_code_amount', None)
    await update.message.reply_text(welcome_text(account), parse_mode=ParseMode.HTML, reply_markup=build_main_menu(account))


async def cmd_add_code(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/addcode <amount>: admin issues a redeem code and gets its file back."""
    if not is_admin(update.effective_user):
        return
    args = context.args or []
    amount = _parse_amount(args[0]) if len(args) == 1 else None
    if amount is None:
        await update.message.reply_text("Usage: /addcode <amount> (a whole number greater than 0)")
        return
    await send_new_code(update, amount)


def _parse_amount(text: str) -> Optional[int]:
    try:
        amount = int((text or '').strip())
    except ValueError:
        return None
    return amount if amount > 0 else None


async def send_new_code(update: Update, amount: int):
    code = await redeem_codes.issue_code(amount, str(update.effective_user.id))
    await update.effective_message.reply_document(
        document=io.BytesIO(redeem_codes.pack_code_file(code)),
        filename=f"redeem_code_{amount}_links.code",
        caption=(
            f"✅ Redeem code created successfully!\nLimit amount: {amount} links\n\n"
            "This file can be shared with users for redemption."
        ),
    )
    await update.effective_message.reply_text("Select an option:", reply_markup=build_admin_menu_keyboard())


# --- Callback router ---

async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    data = query.data or ''
    user = update.effective_user
    uid = str(user.id)
    logger.info(f"Callback received: {data} from {uid}")

    try:
        if data == "back:main":
            context.user_data.pop('awaiting_redeem', None)
            context.user_data.pop('awaiting_code_amount', None)
            account = await ensure_account(user)
            await safe_edit(query, welcome_text(account), reply_markup=build_main_menu(account))
        elif data == "menu:user":
            account = await ensure_account(user)
            await safe_edit(
                query,
                f"🌟 <b>User Menu</b>\n\nYour current limit: <b>{account.balance}</b> links\n\nSelect an option:",
                reply_markup=build_user_menu(with_back=account.is_admin),
            )
        elif data == "menu:admin":
            if not is_admin(user):
                return
            await safe_edit(query, "👑 <b>Admin Menu</b>\n\nSelect an option:", reply_markup=build_admin_menu_keyboard())
        elif data == "limit:check":
            balance = await ledger.get_balance(uid)
            await safe_edit(
                query,
                f"🔢 <b>Your Link Limit</b>\n\nCurrent available limit: <b>{balance}</b> links\n\nUse this limit to place orders.",
                reply_markup=back_keyboard(),
            )
        elif data == "support:contact":
            rows = []
            if ADMIN_USERNAME:
                rows.append([admin_contact_button()])
            rows.append([InlineKeyboardButton("🔙 Back", callback_data="back:main")])
            await safe_edit(
                query,
                "👤 <b>Contact Admin</b>\n\nYou can contact the admin for assistance or to request more limits.",
                reply_markup=InlineKeyboardMarkup(rows),
            )
        elif data.startswith("order:"):
            await handle_order_callback(query, context, uid, data.split(':', 1)[1])
        elif data == "history:list":
            await show_history(query, uid)
        elif data == "history:download":
            await send_history_file(query, uid)
        elif data.startswith("status:"):
            await show_order_status(query, uid, data.split(':', 1)[1])
        elif data == "redeem:start":
            context.user_data['awaiting_redeem'] = True
            await safe_edit(
                query,
                "🎟️ <b>Redeem Code</b>\n\nPlease send the redeem code file you received (or paste the code).",
                reply_markup=InlineKeyboardMarkup([[InlineKeyboardButton("🔙 Cancel", callback_data="back:main")]]),
            )
        elif data == "admin:add_code":
            if not is_admin(user):
                return
            context.user_data['awaiting_code_amount'] = True
            await safe_edit(
                query,
                "➕ <b>Add Redeem Code</b>\n\nPlease specify the limit amount for this code:",
                reply_markup=InlineKeyboardMarkup([[InlineKeyboardButton("🔙 Cancel", callback_data="back:main")]]),
            )
        elif data == "admin:limits":
            if not is_admin(user):
                return
            await show_all_limits(query)
    except BotError as e:
        await safe_edit(query, error_text(e), reply_markup=recovery_keyboard(e))


async def handle_order_callback(query, context: ContextTypes.DEFAULT_TYPE, uid: str, action: str):
    if action == "start":
        context.user_data.pop('awaiting_redeem', None)
        balance = await PROCESSOR.start(uid)
        await safe_edit(
            query,
            f"🛒 <b>New Order</b>\n\nYour current limit: <b>{balance}</b> links\n\n"
            "Please send your links (one per line):\nExample:\nhttps://example.com/1\nhttps://example.com/2",
            reply_markup=InlineKeyboardMarkup([[InlineKeyboardButton("🔙 Cancel", callback_data="order:cancel")]]),
        )
    elif action == "confirm":
        session = await PROCESSOR.confirm(uid)
        await safe_edit(
            query,
            f"⚠️ <b>Final Confirmation</b>\n\nYou are about to order {len(session.links)} links. "
            "This action cannot be undone.\n\nAre you absolutely sure?",
            reply_markup=InlineKeyboardMarkup([[
                InlineKeyboardButton("✅ Complete Order (100%)", callback_data="order:process"),
                InlineKeyboardButton("❌ Cancel", callback_data="order:cancel"),
            ]]),
        )
    elif action == "process":
        await process_order(query, uid)
    elif action == "cancel":
        if await PROCESSOR.cancel(uid):
            await safe_edit(query, "🛑 <b>Order Cancelled</b>\n\nYour order has been cancelled.", reply_markup=back_keyboard())
        else:
            await safe_edit(query, "ℹ️ <b>Nothing to Cancel</b>\n\nThere is no open order, it may have expired.", reply_markup=back_keyboard())


async def process_order(query, uid: str):
    session = PROCESSOR.sessions.get(uid)
    total = len(session.links) if session else 0
    await safe_edit(query, f"🔄 <b>Processing Order</b>\n\nWorking on {total} links. Please wait, this may take some time...")

    async def _report(done: int, total_: int, succeeded: int, failed: int):
        await query.edit_message_text(
            f"🔄 <b>Processing Order</b>\n\nProcessed {done}/{total_} links...\nSuccessful: {succeeded}\nFailed: {failed}",
            parse_mode=ParseMode.HTML,
        )

    result = await PROCESSOR.execute(uid, progress=ProgressReporter(_report, PROGRESS_EVERY))
    lines = [
        "✅ <b>Order Completed</b>\n",
        f"Total links: {result.total}",
        f"Successful: {result.succeeded}",
        f"Failed: {result.failed}",
    ]
    if result.refunded:
        lines.append(f"Refunded: {result.refunded}")
    lines.append(f"Remaining limit: {result.balance}")
    lines.append("\nYou can check the status in Order History.")
    await safe_edit(
        query,
        "\n".join(lines),
        reply_markup=InlineKeyboardMarkup([
            [InlineKeyboardButton("📜 View Order History", callback_data="history:list")],
            [InlineKeyboardButton("🔙 Back to Main", callback_data="back:main")],
        ]),
    )


# --- Order history & status ---

def short_link(link: str, width: int = 30) -> str:
    return link if len(link) <= width else f"{link[:width - 3]}..."


def format_date(iso: str) -> str:
    return (iso or '')[:16].replace('T', ' ')


async def show_history(query, uid: str):
    records = await orders.list_orders(uid, limit=HISTORY_LIMIT)
    if not records:
        await safe_edit(query, "📜 <b>Order History</b>\n\nYou haven't placed any orders yet.", reply_markup=back_keyboard())
        return
    lines = ["📜 <b>Your Order History</b>\n"]
    kb: List[List[InlineKeyboardButton]] = []
    for index, rec in enumerate(records, 1):
        lines.append(
            f"{index}. #{rec.id} • {format_date(rec.created_at)}\n"
            f"   Status: {rec.status.value}\n   Link: {html.escape(short_link(rec.link))}\n"
        )
        kb.append([InlineKeyboardButton(f"📊 Check Status #{rec.id}", callback_data=f"status:{rec.id}")])
    kb.append([InlineKeyboardButton("📥 Download Full History", callback_data="history:download")])
    kb.append([InlineKeyboardButton("🔙 Back", callback_data="back:main")])
    text = "\n".join(lines)
    if len(text) > MAX_MESSAGE_LEN:
        await send_history_file(query, uid)
        text = "📜 <b>Order History</b>\n\nYour order history has been sent as a file due to its length."
    await safe_edit(query, text, reply_markup=InlineKeyboardMarkup(kb))


def history_csv(records: List[orders.OrderRecord]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["order_id", "created_at", "link", "status", "external_order_ids"])
    for rec in records:
        writer.writerow([rec.id, rec.created_at, rec.link, rec.status.value, " ".join(rec.external_ids)])
    return buf.getvalue().encode('utf-8')


async def send_history_file(query, uid: str):
    records = await orders.list_orders(uid)
    if not records:
        await query.message.reply_text("You have no orders to download yet.")
        return
    await query.message.reply_document(
        document=io.BytesIO(history_csv(records)),
        filename=f"order_history_{uid}.csv",
        caption="📜 Your order history has been exported to this file.",
    )


def status_keyboard(order_id) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🔄 Refresh Status", callback_data=f"status:{order_id}")],
        [InlineKeyboardButton("🔙 Back to History", callback_data="history:list")],
    ])


async def show_order_status(query, uid: str, raw_id: str):
    try:
        order_id = int(raw_id)
    except ValueError:
        raise OrderNotFound(raw_id)
    await safe_edit(query, "🔍 <b>Checking Order Status</b>\n\nPlease wait while we fetch the latest status...")
    try:
        record = await refresh_order(SMM_API, order_id, account_id=uid)
    except ExternalApiError as e:
        logger.warning(f"Status check of order #{order_id} failed: {e}")
        await safe_edit(
            query,
            "❌ <b>Status Check Failed</b>\n\nCould not retrieve status information from the service provider.",
            reply_markup=status_keyboard(order_id),
        )
        return
    lines = [
        "📊 <b>Order Status</b>\n",
        f"Date: {format_date(record.created_at)}",
        f"Link: {html.escape(record.link)}\n",
        f"<b>Overall Status: {record.status.value}</b>",
    ]
    for svc in record.services:
        lines.append(f"\n{html.escape(svc.service_key)} ({html.escape(svc.service_id)}):")
        if not svc.external_id:
            lines.append("Not placed")
            continue
        lines.append(f"Status: {html.escape(str(svc.status or '-'))}")
        lines.append(f"Start Count: {html.escape(str(svc.start_count or '-'))}")
        lines.append(f"Remains: {html.escape(str(svc.remains or '-'))}")
    await safe_edit(query, "\n".join(lines), reply_markup=status_keyboard(order_id))


# --- Admin ---

async def show_all_limits(query):
    accounts = await ledger.list_accounts()
    lines = ["👥 <b>All User Limits</b>\n"]
    for index, acc in enumerate(accounts, 1):
        name = f"@{acc.username}" if acc.username else (acc.first_name or acc.account_id)
        lines.append(f"{index}. {html.escape(name)} ({acc.account_id}) - <b>{acc.balance}</b> links")
    text = "\n".join(lines)
    if len(text) > MAX_MESSAGE_LEN:
        plain = "\n".join(
            f"{acc.account_id}\t{acc.username or '-'}\t{acc.first_name or '-'}\t{acc.balance}" for acc in accounts
        )
        await query.message.reply_document(document=io.BytesIO(plain.encode('utf-8')), filename="user_limits.txt")
        text = "👥 <b>All User Limits</b>\n\nUser list has been sent as a file due to its length."
    await safe_edit(query, text, reply_markup=back_keyboard("menu:admin"))


# --- Inbound text & documents ---

async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user = update.effective_user
    uid = str(user.id)
    text = update.message.text or ''

    if context.user_data.get('awaiting_code_amount') and is_admin(user):
        amount = _parse_amount(text)
        if amount is None:
            await update.message.reply_text("❌ Please enter a valid number greater than 0")
            return
        context.user_data.pop('awaiting_code_amount', None)
        await send_new_code(update, amount)
        return

    if context.user_data.get('awaiting_redeem'):
        await redeem_from(update, context, text)
        return

    if PROCESSOR.current_stage(uid) is Stage.AWAITING_LINKS:
        try:
            session = await PROCESSOR.submit_links(uid, text)
        except BotError as e:
            await update.message.reply_text(error_text(e), parse_mode=ParseMode.HTML, reply_markup=recovery_keyboard(e))
            return
        balance = await ledger.get_balance(uid)
        await update.message.reply_text(
            f"📋 <b>Order Summary</b>\n\nLinks detected: {len(session.links)}\n"
            f"Your available limit: {balance}\n\nDo you want to proceed?",
            parse_mode=ParseMode.HTML,
            reply_markup=InlineKeyboardMarkup([[
                InlineKeyboardButton("✅ Confirm Order", callback_data="order:confirm"),
                InlineKeyboardButton("❌ Cancel", callback_data="order:cancel"),
            ]]),
        )
        return

    # Default: guide to menu
    account = await ensure_account(user)
    await update.message.reply_text("Use the menu below.", reply_markup=build_main_menu(account))


async def on_document(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.user_data.get('awaiting_redeem'):
        return
    doc = update.message.document
    tg_file = await context.bot.get_file(doc.file_id)
    data = await tg_file.download_as_bytearray()
    await redeem_from(update, context, data)


async def redeem_from(update: Update, context: ContextTypes.DEFAULT_TYPE, payload):
    uid = str(update.effective_user.id)
    context.user_data.pop('awaiting_redeem', None)
    try:
        token = redeem_codes.read_code_file(payload)
        result = await redeem_codes.redeem_code(token, uid)
    except BotError as e:
        await update.message.reply_text(error_text(e), parse_mode=ParseMode.HTML, reply_markup=back_keyboard())
        return
    await update.message.reply_text(
        f"✅ Code successfully redeemed!\n\nAdded limit: {result.credited}\nYour new total limit: {result.balance}",
        reply_markup=back_keyboard(),
    )


# --- Jobs, commands, errors ---

async def purge_expired_sessions(context: ContextTypes.DEFAULT_TYPE):
    purged = PROCESSOR.sessions.purge_expired()
    if purged:
        logger.info(f"Purged {purged} expired order session(s)")
    PROCESSOR.purge_idle_locks()


async def set_bot_commands(app: Application):
    await app.bot.set_my_commands([BotCommand("start", "Main menu")])
    admin_cmds = [
        BotCommand("start", "Main menu"),
        BotCommand("addcode", "Admin: create a redeem code"),
    ]
    for admin_id in ADMIN_IDS:
        try:
            await app.bot.set_my_commands(admin_cmds, scope=BotCommandScopeChat(chat_id=int(admin_id)))
        except (BadRequest, ValueError) as e:
            logger.warning(f"Could not set admin commands for {admin_id}: {e}")


async def error_handler(update: Optional[Update], context: ContextTypes.DEFAULT_TYPE):
    logger.exception("Unhandled error in handler: %s", context.error)
    try:
        # Try to inform user non-intrusively
        if isinstance(update, Update) and update.callback_query:
            await update.callback_query.answer("An error occurred. Please try again.", show_alert=True)
        elif isinstance(update, Update) and update.effective_chat:
            await context.bot.send_message(
                chat_id=update.effective_chat.id,
                text="An error occurred. Please try again or contact the admin.",
                reply_markup=back_keyboard(),
            )
        for admin_id in ADMIN_IDS:
            await context.bot.send_message(chat_id=admin_id, text=f"⚠️ Error: {context.error}")
    except Exception:
        # Avoid cascading failures in error handler
        logger.warning("Error handler could not notify chat", exc_info=True)


def main():
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is not set in .env")
    if not SMM_SERVICES:
        raise RuntimeError("SMM_SERVICES has no valid entries")
    build_services()

    async def _post_init(app_: Application) -> None:
        await storage.init_db()
        await set_bot_commands(app_)

    app = ApplicationBuilder().token(BOT_TOKEN).concurrent_updates(True).post_init(_post_init).build()

    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("addcode", cmd_add_code))
    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
    app.add_handler(MessageHandler(filters.Document.ALL, on_document))
    app.add_error_handler(error_handler)

    if getattr(app, 'job_queue', None):
        app.job_queue.run_repeating(purge_expired_sessions, interval=300, first=300)
    else:
        logger.info("JobQueue not available; expired sessions are dropped lazily.")

    logger.info("Bot started")
    app.run_polling()


if __name__ == '__main__':
    main()
