from services.webhooks.notifier import NotifyResult, WebhookNotifier

__all__ = ["NotifyResult", "WebhookNotifier"]
