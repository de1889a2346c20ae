"""
Data plan catalogue
===================
Plans offered in the data purchase Flow, keyed by the VAS provider's plan
id. The table is seeded with the default price list on first start and
can be edited in place afterwards.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from miimii.database import Database
from miimii.models import DataPlan, money
from miimii.providers.bilal import NETWORKS

logger = logging.getLogger(__name__)

# (network, plan type, size, validity, price, provider plan id)
DEFAULT_PLANS = [
    ("MTN", "SME", "500MB", "30 days", 345, 36),
    ("MTN", "SME", "1GB", "30 days", 490, 37),
    ("MTN", "SME", "2GB", "30 days", 980, 38),
    ("MTN", "SME", "3GB", "30 days", 1470, 39),
    ("MTN", "SME", "5GB", "30 days", 2450, 40),
    ("MTN", "SME", "10GB", "30 days", 4900, 41),
    ("MTN", "CG", "500MB", "30 days", 425, 42),
    ("MTN", "CG", "1GB", "30 days", 810, 46),
    ("MTN", "CG", "2GB", "30 days", 1620, 47),
    ("MTN", "CG", "5GB", "30 days", 4050, 49),
    ("MTN", "CG", "10GB", "30 days", 8100, 50),
    ("AIRTEL", "CG", "100MB", "7 days", 140, 67),
    ("AIRTEL", "CG", "300MB", "7 days", 291, 66),
    ("AIRTEL", "CG", "500MB", "30 days", 485, 51),
    ("AIRTEL", "CG", "1GB", "30 days", 776, 52),
    ("AIRTEL", "CG", "2GB", "30 days", 1470, 53),
    ("AIRTEL", "CG", "4GB", "30 days", 2425, 54),
    ("AIRTEL", "CG", "10GB", "30 days", 3920, 55),
    ("GLO", "CG", "1.5GB", "30 days", 460, 56),
    ("GLO", "CG", "2.9GB", "30 days", 930, 57),
    ("GLO", "CG", "4.1GB", "30 days", 1260, 58),
    ("GLO", "CG", "5.8GB", "30 days", 1840, 59),
    ("GLO", "CG", "10GB", "30 days", 3010, 60),
    ("9MOBILE", "SME", "1.1GB", "30 days", 390, 61),
    ("9MOBILE", "SME", "2GB", "30 days", 750, 62),
]


class DataPlanCatalog:

    def __init__(self, db: Database):
        self.db = db

    def seed(self) -> int:
        """Insert the default plans when the table is empty."""
        if self.db.count("data_plans") > 0:
            return 0
        with self.db.transaction() as repo:
            for network, plan_type, size, validity, price, plan_id in DEFAULT_PLANS:
                repo.create("data_plans", {
                    "id": plan_id,
                    "network": network,
                    "plan_type": plan_type,
                    "data_size": size,
                    "validity": validity,
                    "selling_price": str(money(price)),
                    "network_code": NETWORKS[network],
                    "api_plan_id": plan_id,
                    "active": 1,
                })
        logger.info(f"Seeded {len(DEFAULT_PLANS)} data plans")
        return len(DEFAULT_PLANS)

    def list_by_network(self, network: str) -> List[DataPlan]:
        rows = self.db.find_all("data_plans", {"network": network.upper(), "active": 1})
        plans = [DataPlan.from_row(row) for row in rows]
        return sorted(plans, key=lambda plan: plan.selling_price)

    def get(self, plan_id) -> Optional[DataPlan]:
        try:
            plan_id = int(plan_id)
        except (TypeError, ValueError):
            return None
        row = self.db.find_one("data_plans", {"id": plan_id})
        return DataPlan.from_row(row) if row else None

    def set_price(self, plan_id: int, price: Decimal):
        self.db.update("data_plans", {"id": int(plan_id)}, {"selling_price": str(money(price))})

    def deactivate(self, plan_id: int):
        self.db.update("data_plans", {"id": int(plan_id)}, {"active": 0})
