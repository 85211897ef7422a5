from typing import Optional

from flask import Blueprint, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from models import User, db

auth_bp = Blueprint('auth', __name__)


def current_user_id() -> Optional[int]:
    """Identity of the signed-in user, as set by login()."""
    return session.get('user_id')


@auth_bp.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}

    email = (data.get('email') or '').strip().lower()
    password = (data.get('password') or '').strip()
    if not email or not password:
        return jsonify({'success': False, 'message': 'Email and password are required'}), 400
    if len(password) < 6:
        return jsonify({'success': False, 'message': 'Password must be at least 6 characters'}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({'success': False, 'message': 'Email already registered'}), 400

    hashed_password = generate_password_hash(password, method='pbkdf2:sha256')

    new_user = User(
        name=f"{data.get('first_name', '')} {data.get('last_name', '')}".strip() or None,
        email=email,
        password=hashed_password,
        role='student'
    )

    db.session.add(new_user)
    db.session.commit()

    return jsonify({'success': True, 'message': 'Registration successful!'}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}

    email = (data.get('email') or '').strip().lower()
    password = (data.get('password') or '').strip()
    user = User.query.filter_by(email=email).first()

    if not user or not check_password_hash(user.password, password):
        return jsonify({'success': False, 'message': 'Invalid email or password'}), 401

    session['user_id'] = user.id
    session['role'] = user.role

    return jsonify({
        'success': True,
        'message': 'Login successful',
        'user': user.to_dict()
    }), 200


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})
