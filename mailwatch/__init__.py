"""MailWatch - mailbox webhook subscriptions and notification forwarding"""

__version__ = "0.1.0"
