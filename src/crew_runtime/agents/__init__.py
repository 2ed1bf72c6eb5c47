"""Agent runtime: per-agent task queues, work-session threads and the scheduler.

A user message is acknowledged immediately and turned into a queued task.
The runner later picks up every agent with due work and runs one work
session per agent: claim tasks one by one, process each in the session's
thread with tool calls, extract durable knowledge, and, for leads, decide
whether the owner should get a briefing.
"""
