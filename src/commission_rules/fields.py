"""Sales fields that commission rule conditions may refer to."""

from __future__ import annotations

SALES_FIELDS = (
    "sale_amount",
    "product_type",
    "product_category",
    "region",
    "monthly_sales",
    "is_new_customer",
    "total_monthly_sales",
    "team_size",
    "team_monthly_sales",
    "team_attendance_rate",
    "is_seasonal_promotion",
    "customer_loyalty_years",
    "payment_method",
    "primary_product_amount",
    "cross_sold_products",
    "cross_sold_amount",
    "account_type",
    "contract_value",
    "contract_duration",
    "payment_received_within_days",
    "referred_customer",
    "referred_sale_amount",
    "referral_source",
    "bundle_items",
    "bundle_value",
    "bundle_discount",
    "quarter",
    "quarterly_sales",
    "quarterly_target_achievement",
    "customer_tenure",
    "renewal_amount",
    "renewal_products",
    "is_emergency_order",
    "delivery_time",
    "order_value",
    "is_international_sale",
    "currency",
    "is_new_product_launch",
    "launch_period_days",
    "launch_sales",
    "customer_satisfaction_score",
    "repeat_purchase",
)

DEFAULT_RECOGNIZED_FIELDS: frozenset[str] = frozenset(SALES_FIELDS)
