"""
Payments Domain

Pre-authorized consultation payments: Stripe gateway, appointment
payment persistence and the manual capture/cancel flows.
"""
