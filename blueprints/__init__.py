"""
Blueprint registration for the Math League API.

All blueprints are registered without URL prefixes; routes carry their
full /api/... paths.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.practice import bp as practice_bp
    from blueprints.usage import bp as usage_bp
    from blueprints.leaderboard import bp as leaderboard_bp
    from blueprints.cron import bp as cron_bp

    app.register_blueprint(practice_bp)
    app.register_blueprint(usage_bp)
    app.register_blueprint(leaderboard_bp)
    app.register_blueprint(cron_bp)
