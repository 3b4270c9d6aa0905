from walletgraph.models.lookup_job import LookupJob
from walletgraph.models.social_graph import SocialGraph, SocialGraphHistory
from walletgraph.models.lookup_history import LookupHistory
from walletgraph.models.analytics import AnalyticsEvent, ApiCallMetric
