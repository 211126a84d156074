"""
Booking domains

fees -> slots -> escrow -> appointments, with payments at the gateway boundary.
Appointments orchestrate the slot and escrow ledgers; nothing else writes their state.
"""
