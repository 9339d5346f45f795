"""
qa — Job-site question board.

Sub-modules:
    board — questions, answers, and the alert sent to the asker
"""
