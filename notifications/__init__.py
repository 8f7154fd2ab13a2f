"""
Notifications — what gets sent, to whom, and when.

- processor:  runs queued jobs, emailing facilitators and fanning out to managers
- scheduler:  overdue scans and the weekly facilitator broadcast
- publisher:  enqueue helpers called at the end of log create/update requests
- weeks:      reporting week and deadline arithmetic
- templates:  subjects and bodies of every email
"""
