# payman_billing/billing/utils/__init__.py
