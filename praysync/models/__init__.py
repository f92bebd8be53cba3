"""Pydantic models decoded at the repository boundary.

Modules:
    base       — shared base model and mixins
    people     — PrayerPerson and create/update payloads
    intentions — PrayerIntention and create/update payloads
    prayers    — Prayer, TodaysPrayers, PrayerPage, PrayerState, UserStats
    realtime   — RemoteChangeEvent and ChangeAction
"""
