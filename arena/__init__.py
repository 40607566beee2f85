"""
Arena Registration Service - slot registration core for the tournament platform

Responsibilities:
- Tournament catalog (one tournament per game and mode)
- Capacity-bounded registration (pending registrations reserve a slot)
- Admin review of registrations with an append-only audit log
- Live slot availability feed
- Read projections for the admin panel
"""
