from functools import wraps
from telegram import Update
from config import ADMIN_ID


def is_admin(user_id: int) -> bool:
    return ADMIN_ID != 0 and user_id == ADMIN_ID


def admin_only(func):
    """Decorator for admin-only commands"""
    @wraps(func)
    async def wrapper(self, update: Update, context, *args, **kwargs):
        if not is_admin(update.effective_user.id):
            await update.message.reply_text("⛔️ Access restricted.")
            return
        return await func(self, update, context, *args, **kwargs)
    return wrapper


def parse_user_id(args):
    """First command argument as a Telegram user id, or None"""
    if not args or not args[0].lstrip('-').isdigit():
        return None
    return int(args[0])
