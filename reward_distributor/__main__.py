from reward_distributor.scheduler.main import run


if __name__ == "__main__":
    run()
