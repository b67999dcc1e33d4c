# payman_billing/billing/__init__.py
