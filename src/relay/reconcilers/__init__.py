from relay.reconcilers.pr_discovery import PRDiscoveryReconciler
from relay.reconcilers.review_cycle import ReviewFixReconciler

__all__ = ["PRDiscoveryReconciler", "ReviewFixReconciler"]
