from chartsense.main import run

run()
