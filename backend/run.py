from dartlink import create_app, socketio
from dartlink.services.matches.scheduler import start_expiry_sweeper

app = create_app()

if __name__ == '__main__':
    start_expiry_sweeper(app)
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
