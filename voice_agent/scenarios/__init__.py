"""
Scenario files for the intake agent.

Each scenario defines:
- name: Scenario identifier
- prompt: System instructions for the live model
- greeting_text: Text the UI shows when the session opens
"""
