import os

from dotenv import load_dotenv
from flask import Flask

from app.backtests import bp as backtests_bp

load_dotenv()


def create_app(config=None) -> Flask:
    app = Flask(__name__)
    app.config["RESULTS_DB"] = os.getenv("RESULTS_DB", "backtest-results/all-backtests.db")
    app.config["BACKTEST_RUNS_DIR"] = os.getenv("BACKTEST_RUNS_DIR", "backtest_runs")
    if config:
        app.config.update(config)
    app.register_blueprint(backtests_bp)
    return app


app = create_app()

if __name__ == "__main__":
    app.run(debug=True)
