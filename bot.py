import logging
from datetime import datetime
from telegram import Update
from telegram.ext import Application, CommandHandler, CallbackContext

from access import AccessPolicy, ResellerRegistry
from backend import PanelBackend
from config import *
from database import Database
from errors import StoreError
from janitor import ReconciliationJanitor, SingleFlightScheduler
from ledger import AccountLedger
from provisioning import ProvisioningService
from security import admin_only, is_admin, parse_user_id
from servers import ServerDirectory
from trial import TrialRateLimiter

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    'not_found': MESSAGES["not_found"],
    'reseller_only': MESSAGES["reseller_only"],
    'trial_used': MESSAGES["trial_used"],
    'trial_disabled': MESSAGES["trial_disabled"],
    'invalid': MESSAGES["invalid_username"],
    'store_failure': MESSAGES["store_failure"],
}


def outcome_message(outcome) -> str:
    if outcome.reason == 'backend_failure':
        return MESSAGES["backend_failure"].format(error=outcome.message)
    return FAILURE_MESSAGES.get(outcome.reason, "❌ Request failed.")


def format_expiry(expires_at) -> str:
    if not expires_at:
        return "-"
    return datetime.fromtimestamp(expires_at / 1000, TIMEZONE).strftime('%Y-%m-%d %H:%M')


class ErrorHandler:
    async def handle_error(self, update: Update, context: CallbackContext):
        logger.error(f"Unhandled error: {context.error}")
        try:
            if update and update.effective_user:
                user_id = update.effective_user.id
                if is_admin(user_id):
                    await context.bot.send_message(ADMIN_ID, f"❌ System error:\n{context.error}")
                else:
                    await context.bot.send_message(user_id, "❌ An error occurred. Please try again.")
        except Exception as e:
            logger.error(f"Error in error handler: {e}")


class VPNBot:
    def __init__(self, db_url: str = DATABASE_URL):
        self.db = Database(db_url)
        self.settings = SettingsStore(VARS_FILE)
        self.settings.reload()
        self.servers = ServerDirectory(self.db)
        self.resellers = ResellerRegistry(self.db)
        self.ledger = AccountLedger(self.db)
        self.policy = AccessPolicy(self.servers, self.resellers, self.settings)
        self.trials = TrialRateLimiter(self.db, self.settings)
        self.provisioning = ProvisioningService(
            self.servers, self.policy, self.ledger, PanelBackend(), self.trials, self.resellers
        )
        self.janitor = ReconciliationJanitor(self.ledger, self.servers)
        self.scheduler = SingleFlightScheduler(self.janitor.run_once)
        self.error_handler = ErrorHandler()

    async def initialize(self, application: Application):
        """Start background tasks; the first janitor run includes the backfill"""
        self.scheduler.start()

    async def shutdown(self, application: Application):
        await self.scheduler.stop()
        self.db.dispose()

    async def start(self, update: Update, context: CallbackContext):
        """Start command handler"""
        await update.message.reply_text(MESSAGES["welcome"].format(store=STORE_NAME))

    async def accounts(self, update: Update, context: CallbackContext):
        """List the caller's accounts"""
        try:
            accounts = self.ledger.list_user_accounts(update.effective_user.id)
        except StoreError as e:
            logger.error(f"Error in accounts: {e}")
            await update.message.reply_text(MESSAGES["store_failure"])
            return

        if not accounts:
            await update.message.reply_text(MESSAGES["no_accounts"])
            return

        lines = ["📋 Your accounts:"]
        for account in accounts:
            lines.append(
                f"• {account.protocol_type.upper()} {account.username} @ {account.server_name or account.domain}"
                f" (expires {format_expiry(account.expires_at)})"
            )
        await update.message.reply_text("\n".join(lines))

    async def trial(self, update: Update, context: CallbackContext):
        """/trial <protocol> <server_id>"""
        args = context.args or []
        if len(args) != 2 or not args[1].isdigit():
            await update.message.reply_text("⚠️ Usage: /trial <protocol> <server_id>")
            return

        outcome = await self.provisioning.trial(update.effective_user.id, args[0].lower(), int(args[1]))
        if not outcome.ok:
            await update.message.reply_text(outcome_message(outcome))
            return

        account = outcome.account
        text = (f"✅ Trial {account.protocol_type.upper()} account created\n"
                f"👤 Username: {account.username}\n"
                f"🌐 Server: {account.server_name}\n"
                f"📅 Expires: {format_expiry(account.expires_at)}")
        for link in account.links:
            text += f"\n{link}"
        await update.message.reply_text(text)

    @admin_only
    async def purge(self, update: Update, context: CallbackContext):
        if not self.scheduler.tick():
            await update.message.reply_text("⏳ A sweep is already running.")
            return
        await update.message.reply_text("🧹 Sweep started.")

    @admin_only
    async def backfill(self, update: Update, context: CallbackContext):
        if not self.scheduler.tick(self.janitor.backfill_server_links):
            await update.message.reply_text("⏳ A sweep is already running.")
            return

        counts = await self.scheduler.wait_idle()
        if counts is None:
            await update.message.reply_text("❌ Backfill failed, see logs.")
            return
        await update.message.reply_text(
            f"✅ Linked {counts['updated']} of {counts['total']} legacy accounts ({counts['failed']} failed)."
        )

    @admin_only
    async def add_reseller(self, update: Update, context: CallbackContext):
        user_id = parse_user_id(context.args)
        if user_id is None:
            await update.message.reply_text("⚠️ Usage: /addreseller <telegram_id>")
            return
        if self.resellers.add_reseller(user_id):
            await update.message.reply_text(f"✅ User {user_id} is now a reseller.")
        else:
            await update.message.reply_text(f"⚠️ User {user_id} is already a reseller.")

    @admin_only
    async def remove_reseller(self, update: Update, context: CallbackContext):
        user_id = parse_user_id(context.args)
        if user_id is None:
            await update.message.reply_text("⚠️ Usage: /delreseller <telegram_id>")
            return
        if self.resellers.remove_reseller(user_id):
            await update.message.reply_text(f"✅ User {user_id} removed from resellers.")
        else:
            await update.message.reply_text(f"⚠️ User {user_id} is not a reseller.")

    @admin_only
    async def reload(self, update: Update, context: CallbackContext):
        settings = self.settings.reload()
        terms = settings.reseller_terms
        await update.message.reply_text(
            f"✅ Settings reloaded.\nTrial: {'on' if settings.trial_enabled else 'off'}\n"
            f"Top-up: {'on' if settings.topup_enabled else 'off'}\n"
            f"Reseller terms: {terms.min_accounts} accounts, {terms.min_topup_amount:,} top-up"
        )


def main():
    """Start the bot"""
    vpn_bot = VPNBot()

    application = (
        Application.builder()
        .token(BOT_TOKEN)
        .post_init(vpn_bot.initialize)
        .post_shutdown(vpn_bot.shutdown)
        .build()
    )

    application.add_handler(CommandHandler("start", vpn_bot.start))
    application.add_handler(CommandHandler("accounts", vpn_bot.accounts))
    application.add_handler(CommandHandler("trial", vpn_bot.trial))
    application.add_handler(CommandHandler("purge", vpn_bot.purge))
    application.add_handler(CommandHandler("backfill", vpn_bot.backfill))
    application.add_handler(CommandHandler("addreseller", vpn_bot.add_reseller))
    application.add_handler(CommandHandler("delreseller", vpn_bot.remove_reseller))
    application.add_handler(CommandHandler("reload", vpn_bot.reload))

    application.add_error_handler(vpn_bot.error_handler.handle_error)

    logger.info("Bot started successfully!")
    application.run_polling()


if __name__ == '__main__':
    main()
