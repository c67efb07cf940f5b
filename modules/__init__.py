"""Recipe engine: ingredients, triggers, actions, cookbooks and recipes."""
