"""
Services package: record codec, drain, replay and record file inventory.
"""
