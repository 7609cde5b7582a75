"""
intelhub: entity intelligence pipeline for CRM records.

Runs a tool-calling research agent against a company, contact or deal,
streams its progress to a waiting client, keeps versioned results with a
bounded change history, and scores deals with a deterministic model.
"""
