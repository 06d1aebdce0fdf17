"""
Calos Assistant — Entry Point.

Single entry point: `python main.py` starts the Telegram bot, which also
drives the monitoring jobs and the morning briefing.
"""

from calos.bot.telegram_bot import main

if __name__ == "__main__":
    main()
