"""Core subsystems"""
