"""Referral attribution, scoring, leaderboard and reward resolution for waitlists."""
