"""Harvest Tracker: track Harvest time from Slack.

WHY: Logging time is easy to forget and tedious to do in another tab.
This package lets team members log in to Harvest with OAuth, start and
stop timers by picking a project and task from Slack messages, and get
periodic nudges when they are not tracking.

HOW: Four layers, leaf first: a Redis-backed TokenStore, the Harvest API
package (OAuth sessions + REST client), the tracking workflow and
reminder scheduler, and the Slack bot plus OAuth callback server.

RULES:
- Redis is the only persistence; no per-user objects live in memory
- Every Slack interaction re-renders from stored state
"""

__version__ = "0.1.0"
