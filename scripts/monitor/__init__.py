"""
Data Gap Monitoring

Detection, logging and best-effort recovery of windows where expected note
data did not arrive downstream.
"""
