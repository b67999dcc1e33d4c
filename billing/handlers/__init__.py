# payman_billing/billing/handlers/__init__.py
