import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID

from pydantic import ValidationError as ModelValidationError

from .errors import ValidationError
from .models import (
    HoldingStatus,
    Package,
    PackageCategory,
    PackageInput,
    PackageStats,
    PackageUpdate,
    quantize_money,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("price", "profit_amount", "duration_days", "daily_profit", "total_sales", "created_at", "name")


def derive_package_fields(
    price: Decimal,
    profit_amount: Optional[Decimal],
    profit_percentage: Optional[Decimal],
    duration_days: int,
) -> dict:
    """Fill in whichever of profit amount / percentage is missing and
    recompute daily profit and total return."""
    if duration_days is None or duration_days < 1:
        raise ValidationError("Duration must be at least 1 day")
    if profit_amount is None and profit_percentage is None:
        raise ValidationError("Either profit amount or profit percentage is required")
    if profit_amount is None:
        profit_amount = quantize_money(price * profit_percentage / 100, ROUND_HALF_UP)
    if profit_percentage is None:
        profit_percentage = (profit_amount * 100 / price).quantize(Decimal("0.01"), ROUND_HALF_UP)
    return {
        "profit_amount": profit_amount,
        "profit_percentage": profit_percentage,
        "daily_profit": quantize_money(profit_amount / duration_days),
        "total_return": price + profit_amount,
    }


class PackageCatalog:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def create_package(self, request: PackageInput, created_by: Optional[UUID] = None) -> Package:
        if request.price <= 0:
            raise ValidationError("Package price must be greater than zero")
        data = request.model_dump(exclude={"profit_amount", "profit_percentage"})
        data.update(derive_package_fields(
            request.price, request.profit_amount, request.profit_percentage, request.duration_days
        ))
        package = self._build(data, created_by=created_by)
        self.storage.put_package(package)
        logger.info("Created package %s (%s)", package.name, package.id)
        return package

    def update_package(self, package_id: UUID, changes: PackageUpdate) -> Package:
        with self.storage.package_lock(package_id):
            package = self.storage.get_package(package_id)
            updates = changes.model_dump(exclude_unset=True, exclude_none=True)
            data = package.model_dump()
            data.update(updates)
            # An explicit new amount wins; otherwise a new percentage re-derives it.
            profit_amount = updates.get("profit_amount")
            profit_percentage = updates.get("profit_percentage")
            if profit_amount is None and profit_percentage is None:
                profit_amount = package.profit_amount
            elif profit_amount is not None:
                profit_percentage = None
            data.update(derive_package_fields(
                data["price"], profit_amount, profit_percentage, data["duration_days"]
            ))
            updated = self._build(data)
            self.storage.put_package(updated)
        logger.info("Updated package %s", package_id)
        return updated

    def delete_package(self, package_id: UUID) -> None:
        with self.storage.package_lock(package_id):
            self.storage.get_package(package_id)
            active = [
                h for h in self.storage.all_holdings()
                if h.package_id == package_id and h.status == HoldingStatus.ACTIVE
            ]
            if active:
                raise ValidationError("Cannot delete package with active purchases")
            self.storage.delete_package(package_id)
        logger.info("Deleted package %s", package_id)

    def get_package(self, package_id: UUID) -> Package:
        return self.storage.get_package(package_id)

    def list_packages(
        self,
        category: Optional[PackageCategory] = None,
        active_only: bool = True,
        sort_by: str = "price",
        descending: bool = False,
    ) -> list[Package]:
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort packages by {sort_by}")
        packages = [
            p for p in self.storage.list_packages()
            if (category is None or p.category == category) and (not active_only or p.is_active)
        ]
        packages.sort(key=lambda p: getattr(p, sort_by), reverse=descending)
        return packages

    def record_sale(self, package_id: UUID, quantity: int, revenue: Decimal) -> Package:
        with self.storage.package_lock(package_id):
            package = self.storage.get_package(package_id)
            package.total_sales += quantity
            package.total_revenue += revenue
            self.storage.put_package(package)
        return package

    def package_stats(self) -> PackageStats:
        packages = self.storage.list_packages()
        top = sorted(packages, key=lambda p: p.total_sales, reverse=True)[:5]
        return PackageStats(
            total_packages=len(packages),
            active_packages=sum(1 for p in packages if p.is_active),
            total_sales=sum(p.total_sales for p in packages),
            total_revenue=sum((p.total_revenue for p in packages), Decimal("0.00")),
            top_packages=top,
        )

    def _build(self, data: dict, **extra) -> Package:
        data = {**data, **{k: v for k, v in extra.items() if v is not None}}
        if data.get("min_purchase", 1) > data.get("max_purchase", 10):
            raise ValidationError("Minimum purchase cannot exceed maximum purchase")
        try:
            return Package(**data)
        except ModelValidationError as e:
            raise ValidationError(str(e)) from e

