"""
League Service - Game Lifecycle & Standings Engine

Responsibilities:
- Game registration with capacity and deadline checks
- Late-cancellation and no-show penalties
- Placement scoring and per-tournament standings
- Background lifecycle sweeps (upcoming -> in_progress)
"""
