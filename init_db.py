"""
Database initialization script for deployment
Run with: python init_db.py [--demo]
"""
import sys

from app import create_app
from models import db, User, init_default_data, get_or_create_default_tournament


def initialize_database(with_demo=False):
    """Initialize database tables and default data"""
    app = create_app()
    with app.app_context():
        print("Creating database tables...")
        db.create_all()

        print("Initializing default data...")
        init_default_data()

        if with_demo:
            organizer = User.query.filter_by(username='demo_organizer').first()
            if not organizer:
                organizer = User(username='demo_organizer', email='organizer@smashledger.local', role='organizer')
                organizer.set_password('organizer123')
                db.session.add(organizer)
                db.session.commit()
            tournament = get_or_create_default_tournament(organizer)
            print(f"Demo tournament ready: {tournament.name} (id={tournament.id})")

        print("Database initialized successfully!")
        print("Default admin credentials:")
        print("  Username: admin")
        print("  Password: admin123")


if __name__ == "__main__":
    initialize_database(with_demo='--demo' in sys.argv)
