"""Android device helpers used around an engine run.

These are *thin* wrappers around adb; the engine itself drives the UI.
"""
