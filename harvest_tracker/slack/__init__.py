"""Slack integration for the Harvest tracker.

WHY: Team members track time without leaving Slack. This package holds
the Block Kit builders, the messenger used to send and edit messages,
and the Socket Mode bot that routes commands and interactive callbacks.

HOW: The bot runs with slack-bolt's Socket Mode adapter. Commands and
actions are delegated to TrackingWorkflow, OAuthSessionManager and
ReminderScheduler; their views are sent back through SlackMessenger.

RULES:
- Socket Mode requires SLACK_BOT_TOKEN and SLACK_APP_TOKEN
- All Slack actions must be ack()'d within 3 seconds
"""
