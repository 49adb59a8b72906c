"""Package entry point for ``python -m harvest_tracker``.

WHY: Operators start the bot as ``python -m harvest_tracker``. Python's
``-m`` flag looks for ``__main__.py`` inside the package and executes it.

HOW: Delegates to the Slack bot's main(), which also starts the OAuth
callback server and the reminder scheduler.
"""

from harvest_tracker.slack.bot import main

if __name__ == "__main__":
    main()
