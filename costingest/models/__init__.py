from costingest.models.cloud import CloudAccount, CostSummary, DailyCost, ServiceCost, ServiceUsageMetric
from costingest.models.export import ExportConfig, IngestionLog

__all__ = [
    "CloudAccount",
    "CostSummary",
    "DailyCost",
    "ServiceCost",
    "ServiceUsageMetric",
    "ExportConfig",
    "IngestionLog",
]
