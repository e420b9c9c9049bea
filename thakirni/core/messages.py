"""
Thakirni — Bot reply templates.

Fixed Arabic and English texts used by the command router and the
WhatsApp gateway. The bot language is chosen by settings.BOT_LANGUAGE.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

MESSAGES: dict[str, dict[str, str]] = {
    "ar": {
        "welcome": (
            "مرحباً بك في ذكرني! 👋\n\nيمكنني مساعدتك في:\n• إنشاء تذكيرات\n"
            "• إدارة المهام\n• قوائم التسوق\n• تذكيرات الاجتماعات\n\n"
            "أرسل 'مساعدة' للمزيد من المعلومات."
        ),
        "help": (
            "*الأوامر المتاحة:*\n\n📝 *التذكيرات:*\nذكرني [النص] في [الوقت]\n"
            "ذكرني كل يوم في [الوقت]\n\n📋 *المهام:*\nمهمة [العنوان]\nأضف مهمة [العنوان]\n\n"
            "🛒 *التسوق:*\nقائمة التسوق\nأضف [المنتج]\nتم شراء [المنتج]\n\n"
            "📅 *الاجتماعات:*\nاجتماع [العنوان] في [الوقت]"
        ),
        "not_connected": (
            "مرحباً! يبدو أن رقمك غير مربوط بحساب ذكرني.\n\n"
            "سجل دخولك في التطبيق واربط رقم الواتساب من الإعدادات للاستفادة من جميع الميزات."
        ),
        "verification_code": "🔐 رمز التحقق الخاص بك في ذكرني: *{code}*\n\nصالح لمدة {minutes} دقائق.",
        "phone_linked": (
            "🎉 تم ربط حسابك بنجاح!\n\nيمكنك الآن:\n• إرسال 'ذكرني...' لإنشاء تذكير\n"
            "• إرسال 'مهمة...' لإضافة مهمة\n• إرسال اسم منتج لإضافته للتسوق\n\n"
            "أرسل 'مساعدة' للمزيد."
        ),
        "not_understood": "عذراً، لم أفهم طلبك. أرسل 'مساعدة' لمعرفة الأوامر المتاحة.",
        "error": "حدث خطأ. يرجى المحاولة مرة أخرى.",
        "reminder_needs_title": "يرجى تحديد ما تريد التذكير به والوقت.",
        "task_needs_title": "يرجى تحديد عنوان المهمة.",
        "meeting_needs_details": "يرجى تحديد عنوان الاجتماع ووقته.",
        "item_needs_name": "يرجى تحديد اسم المنتج.",
        "low_confidence": "لست متأكداً مما تقصد. هل يمكنك إعادة صياغة طلبك؟",
        "item_added": "✅ تمت إضافة *{name}* للقائمة",
        "item_checked": "☑ تم شراء *{name}*",
        "item_not_found": "لم أجد *{name}* في القائمة.",
        "no_grocery_list": "لا توجد قائمة تسوق. أرسل اسم منتج لإنشاء قائمة جديدة.",
        "default_list_name": "قائمة التسوق",
        "reminder_done": "✅ تم إتمام التذكير!",
        "reminder_snoozed": "⏰ تم تأجيل التذكير {minutes} دقيقة",
        "task_done": "✅ تم إنجاز المهمة!",
        "task_snoozed": "⏰ تم تأجيل المهمة {minutes} دقيقة",
        "meeting_confirmed": "✅ تم تأكيد حضورك!",
        "meeting_cancelled": "❌ تم إلغاء الاجتماع",
        "tasks_header": "📋 *مهامك:*",
        "tasks_empty": "لا توجد مهام مفتوحة 🎉",
        "reminders_header": "🔔 *تذكيراتك:*",
        "reminders_empty": "لا توجد تذكيرات نشطة.",
        "reminder_title": "🔔 *تذكير: {title}*",
        "task_title": "📋 *مهمة قادمة*\n\n*{title}*\nالموعد: {when}",
        "meeting_title": "📅 *اجتماع قادم*\n\n*{title}*\nالوقت: {when}",
        "meeting_location": "\nالمكان: {location}",
        "meeting_url": "\nالرابط: {url}",
        "grocery_remaining": "*المتبقي:*",
        "grocery_bought": "*تم شراؤه:*",
        "grocery_empty": "القائمة فارغة! أرسل اسم المنتج لإضافته.",
        "button_done": "✓ تم",
        "button_snooze": "⏰ تأجيل",
        "button_task_done": "✓ إنجاز",
        "button_attend": "✓ سأحضر",
        "button_cancel": "✗ إلغاء",
    },
    "en": {
        "welcome": (
            "Welcome to Thakirni! 👋\n\nI can help you with:\n• Creating reminders\n"
            "• Managing tasks\n• Grocery lists\n• Meeting reminders\n\n"
            "Send 'help' for more info."
        ),
        "help": (
            "*Available commands:*\n\n📝 *Reminders:*\nRemind me [text] at [time]\n"
            "Remind me daily at [time]\n\n📋 *Tasks:*\nTask [title]\nAdd task [title]\n\n"
            "🛒 *Grocery:*\nGrocery list\nAdd [item]\nBought [item]\n\n"
            "📅 *Meetings:*\nMeeting [title] at [time]"
        ),
        "not_connected": (
            "Hi! Your number isn't linked to a Thakirni account yet.\n\n"
            "Sign in to the app and link your WhatsApp number from Settings to use every feature."
        ),
        "verification_code": "🔐 Your Thakirni verification code: *{code}*\n\nValid for {minutes} minutes.",
        "phone_linked": (
            "🎉 Your account is linked!\n\nYou can now:\n• Send 'Remind me...' to create a reminder\n"
            "• Send 'Task...' to add a task\n• Send an item name to add it to your grocery list\n\n"
            "Send 'help' for more."
        ),
        "not_understood": "Sorry, I didn't understand. Send 'help' to see available commands.",
        "error": "An error occurred. Please try again.",
        "reminder_needs_title": "Please tell me what to remind you about and when.",
        "task_needs_title": "Please give the task a title.",
        "meeting_needs_details": "Please give the meeting a title and a time.",
        "item_needs_name": "Please tell me which item.",
        "low_confidence": "I'm not sure what you meant. Could you rephrase that?",
        "item_added": "✅ Added *{name}* to list",
        "item_checked": "☑ Bought *{name}*",
        "item_not_found": "I couldn't find *{name}* on your list.",
        "no_grocery_list": "You have no grocery list yet. Send an item name to start one.",
        "default_list_name": "Grocery list",
        "reminder_done": "✅ Reminder completed!",
        "reminder_snoozed": "⏰ Reminder snoozed for {minutes} minutes",
        "task_done": "✅ Task completed!",
        "task_snoozed": "⏰ Task postponed by {minutes} minutes",
        "meeting_confirmed": "✅ Attendance confirmed!",
        "meeting_cancelled": "❌ Meeting cancelled",
        "tasks_header": "📋 *Your tasks:*",
        "tasks_empty": "No open tasks 🎉",
        "reminders_header": "🔔 *Your reminders:*",
        "reminders_empty": "No active reminders.",
        "reminder_title": "🔔 *Reminder: {title}*",
        "task_title": "📋 *Upcoming task*\n\n*{title}*\nDue: {when}",
        "meeting_title": "📅 *Upcoming meeting*\n\n*{title}*\nTime: {when}",
        "meeting_location": "\nLocation: {location}",
        "meeting_url": "\nLink: {url}",
        "grocery_remaining": "*Remaining:*",
        "grocery_bought": "*Bought:*",
        "grocery_empty": "The list is empty! Send an item name to add it.",
        "button_done": "✓ Done",
        "button_snooze": "⏰ Snooze",
        "button_task_done": "✓ Complete",
        "button_attend": "✓ Attending",
        "button_cancel": "✗ Cancel",
    },
}


def render(key: str, language: str = "ar", **fmt: object) -> str:
    """Look up a template, falling back to Arabic, and fill in placeholders."""
    table = MESSAGES.get(language, MESSAGES["ar"])
    template = table.get(key, MESSAGES["ar"][key])
    return template.format(**fmt) if fmt else template


def format_local(value: datetime, tz_name: str) -> str:
    """Render an aware datetime in the user's zone, e.g. '2026-03-01 17:00'."""
    return value.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M")
