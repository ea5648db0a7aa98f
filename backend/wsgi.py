from shiftledger import create_app

app = create_app()
